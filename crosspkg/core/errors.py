"""
Exception hierarchy for crosspkg.

Library code raises these; the CLI catches CrossPkgError and turns it
into an exit status, the resolver turns them into report entries.
"""

from typing import Optional


class CrossPkgError(Exception):
    """Base class for every error raised by crosspkg."""


class UnsupportedFormat(CrossPkgError):
    """The file is not a .deb, .rpm or .pkg.tar.{zst,xz,gz} package."""


class MalformedPackage(CrossPkgError):
    """Package metadata is missing, truncated or unreadable."""


class BuildFailed(CrossPkgError):
    """An emitter could not produce the output archive."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class FetchFailed(CrossPkgError):
    """A dependency could not be queried or downloaded."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class OversizedArtifact(CrossPkgError):
    """A dependency exceeds the maximum artifact size and is skipped."""

    def __init__(self, name: str, size: int, limit: int):
        super().__init__(
            f"{name}: {size / 1e6:.1f} MB exceeds "
            f"{limit / 1e6:.0f} MB limit"
        )
        self.name = name
        self.size = size
        self.limit = limit


class ContainerError(CrossPkgError):
    """The container runtime is missing or a container run failed."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out
