"""Exception types raised by duelcore."""


class DuelError(Exception):
    """Base class for every error raised by this package."""


class InvalidRequestError(DuelError):
    """A local request was rejected before anything was sent to the server."""


class AuthRejectedError(DuelError):
    """The match server refused the auth frame."""


class ChannelClosed(DuelError):
    """The transport closed underneath a read or write."""

    def __init__(self, code: int | None = None, reason: str = ""):
        super().__init__(f"channel closed (code={code}, reason={reason!r})")
        self.code = code
        self.reason = reason


class LobbyError(DuelError):
    """The server refused a lobby request, or its reply never arrived."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class AccountError(DuelError):
    """The account data API could not be reached or returned garbage."""
