# protocol/errors.py

class ProtocolError(Exception):
    """Base class for everything that goes wrong between two endpoints."""


class DecodeError(ProtocolError):
    """A record or frame did not have the expected size or shape."""


class CapacityExceeded(ProtocolError):
    """The catalog already holds the maximum number of active entries."""


class TransportError(ProtocolError):
    """A content transfer failed on the socket or in its framing."""


class ConnectionClosed(TransportError):
    """The remote side closed the connection before the expected data arrived."""


class RegistryTimeout(ProtocolError):
    """The index server did not answer within the allowed time."""


class RegistryError(ProtocolError):
    """The index server answered with an error record."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason
