"""
File transfer module for server-side document operations.

Handles:
- Attachment validation and storage
- Document upload coordination
- Document download coordination
- Transfer session management
"""
