"""Shared exception types for wxbridge."""


class BridgeError(Exception):
    """Base exception for all wxbridge errors."""


class ConfigError(BridgeError):
    """Configuration is invalid or missing."""


class StorageError(BridgeError):
    """Persisted state could not be read or written."""


class TransportError(BridgeError):
    """A connection could not be opened or was lost during the handshake."""


class ProtocolError(BridgeError):
    """A frame or payload did not match the expected wire format."""


class MetadataParseError(ProtocolError):
    """Embedded attachment metadata is not well-formed."""


class AuthError(BridgeError):
    """The gateway rejected the connect handshake."""


class NotConnectedError(BridgeError):
    """The session has no open transport."""


class NotAuthenticatedError(BridgeError):
    """The transport is open but the handshake has not succeeded."""


class ConnectionClosedError(BridgeError):
    """The session was closed while a request was outstanding."""


class RequestTimeoutError(BridgeError):
    """No terminal response arrived within the request's time bound."""


class RemoteError(BridgeError):
    """The remote side answered with an explicit error."""


class MediaError(BridgeError):
    """A media download, save or send failed."""


class LoginTimeoutError(BridgeError):
    """The messaging account did not log in before the polling deadline."""


class ConnectorError(BridgeError):
    """Messaging service call failed."""
