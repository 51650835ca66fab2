"""
Chat module for server-side messaging functionality.

Handles:
- Request handling on the push channel
- Message send, history and read receipts
- Event fan-out to live connections
"""
