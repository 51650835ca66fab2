"""
File transfer module for client-side document operations.

Handles:
- Local document validation
- Document offer and upload
- Document downloads from server
"""
