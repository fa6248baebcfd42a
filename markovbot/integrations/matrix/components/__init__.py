"""
Matrix integration components package.

This package contains modular components for the Matrix transport:
- auth: Authentication and token management
- events: Sync response parsing into inbound events
- room_ops: Joining rooms and per-room nicks
- messages: Message sending
"""
