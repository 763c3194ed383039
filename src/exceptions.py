"""Custom exceptions for Netkit with user-friendly messages."""


class NetkitError(Exception):
    """Base exception for Netkit errors."""

    def __init__(self, message: str, user_hint: str | None = None):
        self.message = message
        self.user_hint = user_hint
        super().__init__(message)

    def __str__(self) -> str:
        if self.user_hint:
            return f"{self.message}\n  Hint: {self.user_hint}"
        return self.message


class UnsafeUrlError(NetkitError, ValueError):
    """URL was rejected by the SSRF guard.

    Subclasses ValueError so pydantic field validators report it as a
    validation error.
    """

    def __init__(self, url: str, reason: str, message: str):
        self.url = url
        self.reason = reason
        super().__init__(
            message=message,
            user_hint="Only public http(s) hosts can be requested",
        )


class UpstreamRequestError(NetkitError):
    """Outbound request failed at the network level."""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        full_msg = f"{message}" + (f" (URL: {url})" if url else "")
        super().__init__(message=full_msg)


class ValidationError(NetkitError):
    """Input validation error."""

    def __init__(self, field: str, reason: str):
        super().__init__(
            message=f"Invalid {field}: {reason}",
            user_hint=f"Check the {field} field in the request",
        )
