"""
Server package for LAN Messenger.

This package contains all server-side functionality including:
- Message persistence
- Presence tracking
- Real-time event fan-out
- Document transfer management
- Configuration and utilities
"""
