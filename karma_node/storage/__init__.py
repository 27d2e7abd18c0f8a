"""Snapshot persistence backends for the karma engine state."""
