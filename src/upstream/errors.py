from __future__ import annotations


class UpstreamError(RuntimeError):
    def __init__(self, message: str, *, package: str | None = None, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.package = package
        self.stage = stage

    def with_context(self, *, package: str | None = None, stage: str | None = None) -> "UpstreamError":
        if self.package is None and package is not None:
            self.package = package
        if self.stage is None and stage is not None:
            self.stage = stage
        return self

    def __str__(self) -> str:
        prefix = ""
        if self.package and self.stage:
            prefix = f"{self.package} ({self.stage}): "
        elif self.package:
            prefix = f"{self.package}: "
        elif self.stage:
            prefix = f"{self.stage}: "
        return prefix + self.message


class InvalidFormat(UpstreamError, ValueError):
    pass


class NotFound(UpstreamError):
    pass


class NoMatchingAsset(UpstreamError):
    pass


class NetworkError(UpstreamError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        package: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message, package=package, stage=stage)
        self.status_code = status_code


class RateLimited(NetworkError):
    pass


class ExtractionFailed(UpstreamError):
    pass


class ChecksumMismatch(UpstreamError):
    pass


class CorruptStore(UpstreamError):
    pass


class InvalidState(UpstreamError):
    pass


class FilesystemError(UpstreamError):
    @classmethod
    def from_os_error(cls, e: OSError, *, package: str | None = None, stage: str | None = None) -> "FilesystemError":
        target = e.filename if e.filename is not None else ""
        detail = e.strerror or str(e)
        message = f"{detail}: {target}" if target else detail
        return cls(message, package=package, stage=stage)
