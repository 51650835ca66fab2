"""
Presence module for server-side connection tracking.

Handles:
- Mapping user ids to their live connection
- Online user snapshots
"""
