"""
Client package for LAN Messenger.

This package contains all client-side functionality including:
- Request/response over the push channel
- Local conversation state and read receipts
- Document upload and download
- Configuration and utilities
"""
