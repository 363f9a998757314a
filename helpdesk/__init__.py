"""Access-controlled help desk core: sessions, roles, policy and guarded operations."""
