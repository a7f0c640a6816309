"""Exception hierarchy shared by the registry, resolver, link backend and HTTP layer."""

from typing import Optional


class VfsProxyError(Exception):
    """Base exception for proxy errors."""
    pass


class ConfigError(VfsProxyError):
    """Configuration value is missing or invalid."""
    pass


class BadRequestError(VfsProxyError):
    """Inbound request is missing a usable target URL."""
    pass


class ReadOnlyError(VfsProxyError):
    """Mutation attempted through the read-only link filesystem."""

    def __init__(self, message: str = "link: read only"):
        super().__init__(message)


class ObjectNotFound(VfsProxyError):
    """Remote identifier is unknown, or its metadata could not be resolved.

    ``cause`` is set when the identifier was registered but resolution failed,
    so operators can tell a flaky upstream apart from a bad client request.
    """

    def __init__(self, remote: str, cause: Optional[BaseException] = None):
        self.remote = remote
        self.cause = cause
        if cause is None:
            super().__init__(f"object not found: {remote}")
        else:
            super().__init__(f"object not found: {remote} (resolution failed: {cause})")

    @property
    def resolution_failed(self) -> bool:
        return self.cause is not None


class ResolutionError(VfsProxyError):
    """Base class for metadata/content fetch failures against the upstream."""
    pass


class UpstreamTransientError(ResolutionError):
    """Retryable upstream failure that persisted after the pacer gave up."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamStatusError(ResolutionError):
    """Upstream answered with a status that is not 200 or 206."""

    def __init__(self, status_code: int, reason: str = "", url: str = ""):
        self.status_code = int(status_code)
        self.reason = reason or ""
        self.url = url or ""
        detail = f"{self.status_code} {self.reason}".strip()
        super().__init__(f"upstream returned status {detail}")


class UnknownSizeError(ResolutionError):
    """Upstream response carried no usable length."""

    def __init__(self, url: str = ""):
        self.url = url or ""
        super().__init__("metadata fetch failed: unknown file size")


class InvalidRangeError(VfsProxyError):
    """Range requested on an object whose total length is unknown."""

    def __init__(self, message: str = "Can't use Range: on files of unknown length"):
        super().__init__(message)
