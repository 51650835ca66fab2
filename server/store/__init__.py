"""
Store module for durable server-side state.

Handles:
- Message persistence and seen-state transitions
- User directory lookups for existence checks and the peer list
"""
