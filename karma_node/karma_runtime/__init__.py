"""
Ledger-only reputation runtime: contributions, scoring, access rules,
permission cache and the audit event log. No network or HTTP concerns.
"""
