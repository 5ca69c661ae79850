"""Exceptions raised by the relay server."""


class RelayError(Exception):
    """Base exception for relay server errors"""
    pass


class ProtocolError(RelayError):
    """An inbound frame could not be parsed into a known message"""
    pass


class SessionIdExhaustedError(RelayError):
    """No unused session identifier could be found"""
    pass


class ConfigurationError(RelayError):
    """Raised when configuration is invalid"""
    pass
