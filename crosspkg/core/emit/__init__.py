"""Per-format emitters writing native packages from the intermediate layout."""

from typing import Optional, Union

from ..formats import PackageFormat
from .base import Emitter, event_bodies, systemd_hooks, translate_event
from .deb import DebEmitter
from .pacman import PacmanEmitter
from .rpm import RpmEmitter

_EMITTERS = {
    PackageFormat.DEB: DebEmitter,
    PackageFormat.RPM: RpmEmitter,
    PackageFormat.PACMAN: PacmanEmitter,
}


def get_emitter(fmt: Union[str, PackageFormat], timeout: Optional[int] = None) -> Emitter:
    """Return the emitter for a format.

    Args:
        fmt: Target package format
        timeout: Seconds allowed for the native archiver (dpkg-deb, rpmbuild)
    """
    return _EMITTERS[PackageFormat.parse(fmt)](timeout=timeout)


__all__ = [
    'Emitter',
    'DebEmitter',
    'RpmEmitter',
    'PacmanEmitter',
    'get_emitter',
    'event_bodies',
    'systemd_hooks',
    'translate_event',
]
