"""Errors raised by the query, RCON and master server clients.

Every error is scoped to the call that raised it. The ``retryable`` flag tells
the caller whether trying the same call again can reasonably succeed.
"""


class SteamQueryError(Exception):
    """Base class of every error raised by this package."""
    retryable = False


class Timeout(SteamQueryError):
    """No reply arrived within the allotted time."""
    retryable = True


class ServerUnreachable(SteamQueryError):
    """Raised when the transport failed after all allotted attempts."""
    retryable = True


class MalformedPacket(SteamQueryError):
    """Raised if a header or payload does not follow the wire format."""
    pass


class CorruptResponse(MalformedPacket):
    """Raised if a reassembled response fails decompression or its checksum."""
    pass


class UnexpectedReply(SteamQueryError):
    """Raised when the reply type does not match the request in flight."""
    pass


class BadChallenge(UnexpectedReply):
    """Raised if the server keeps rejecting the challenge number."""
    pass


class RconError(SteamQueryError):
    """Generic RCON error."""
    pass


class NotAuthenticated(RconError):
    """Raised when a command is sent on a session that is not authenticated."""
    pass


class RconAuthError(NotAuthenticated):
    """Raised if an RCON Authentication error occurs."""
    pass


class RconSizeError(RconError):
    """Raised when an RCON packet is an illegal size."""
    pass
