# =============================================================================
# Domain Errors
# =============================================================================
#
# Only NotFoundError is meant to reach API callers (mapped to HTTP 404 in
# main.py). DownstreamUnavailableError is raised inside the agent and search
# clients and caught at the call site, where the capability's fallback is
# substituted. Audit write failures never leave the communication logger.
# =============================================================================


class ShopAssistantError(Exception):
    """Base class for application errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(ShopAssistantError):
    """A session or search result does not exist (or is not owned by the session)."""


class DownstreamUnavailableError(ShopAssistantError):
    """An agent or search capability is unreachable or returned an error."""

    def __init__(self, capability: str, message: str) -> None:
        self.capability = capability
        super().__init__(f"{capability}: {message}")
