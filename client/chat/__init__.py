"""
Chat module for client-side messaging functionality.

Handles:
- Sending requests and matching replies
- Dispatching push events
- Reconciling the active conversation
"""
