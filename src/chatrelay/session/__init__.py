"""Session state machine and its supervisor."""
