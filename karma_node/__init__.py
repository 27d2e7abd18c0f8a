"""
Karma Node package initializer

Reputation scoring and access control engine. Keep this module
lightweight; import KarmaEngine from karma_node.engine.
"""

__all__ = []
