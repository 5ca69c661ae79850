"""Relay chat client: protocol state machine and terminal interface."""
