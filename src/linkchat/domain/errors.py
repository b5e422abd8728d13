from __future__ import annotations

"""Error taxonomy shared by the conversation, streaming and credential code."""


class LinkChatError(Exception):
    """Base class; ``str(exc)`` is safe to show to the user."""


class NotFound(LinkChatError):
    pass


class InvalidInput(LinkChatError):
    pass


class Conflict(LinkChatError):
    pass


class ProviderFailure(LinkChatError):
    """Upstream generation failed or returned nothing."""


class Unauthorized(LinkChatError):
    """Missing or wrong bearer credential."""


class SessionNotAuthenticated(Unauthorized):
    """The browser session has not consumed a link token yet."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class CredentialError(LinkChatError):
    pass


class InvalidToken(CredentialError):
    def __init__(self, message: str = "Invalid magic link token.") -> None:
        super().__init__(message)


class AlreadyUsed(CredentialError):
    def __init__(self, message: str = "Magic link token already used.") -> None:
        super().__init__(message)


class Expired(CredentialError):
    def __init__(self, message: str = "Magic link token expired.") -> None:
        super().__init__(message)
