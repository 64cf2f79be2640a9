"""donelog exceptions."""

from __future__ import annotations


class DonelogError(Exception):
    """Base exception for donelog errors."""

    pass


class AuthError(DonelogError):
    """Raised when no usable access token can be produced."""

    pass


class FetchError(DonelogError):
    """Raised when a Graph request keeps failing after its retry budget."""

    def __init__(
        self,
        url: str,
        status_code: int | None = None,
        cause: BaseException | None = None,
        message: str | None = None,
    ) -> None:
        self.url = url
        self.status_code = status_code
        self.cause = cause
        if message is None:
            if status_code is not None:
                message = f"HTTP {status_code} from {url}"
            else:
                message = f"Request to {url} failed: {cause}"
        super().__init__(message)


class MappingError(DonelogError):
    """Raised when a raw task record cannot be turned into a Task."""

    pass


class ConfigError(DonelogError):
    """Raised when a setting from the environment is invalid."""

    pass
