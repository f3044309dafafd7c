"""Terminal styling for crosspkg output.

Each package format and each resolver failure cause has its own colour, so
a long resolve report can be scanned by eye:
  - deb: magenta, rpm: blue, pacman: cyan
  - timeouts and oversized packages: yellow (worth retrying or splitting)
  - fetch, build and malformed-package failures: red

Styling is off when --nocolor is given, NO_COLOR is set, or stdout is not
a terminal.
"""

import os
import sys

from ..core.formats import PackageFormat
from ..core.resolver import CAUSE_OVERSIZED, CAUSE_TIMEOUT

_RESET = '\033[0m'
_BOLD = '\033[1m'
_RED = '\033[91m'
_GREEN = '\033[92m'
_YELLOW = '\033[93m'
_BLUE = '\033[94m'
_MAGENTA = '\033[95m'
_CYAN = '\033[96m'

_FORMAT_COLORS = {
    PackageFormat.DEB: _MAGENTA,
    PackageFormat.RPM: _BLUE,
    PackageFormat.PACMAN: _CYAN,
}

_RETRYABLE_CAUSES = {CAUSE_TIMEOUT, CAUSE_OVERSIZED}

_enabled = True


def init(nocolor: bool = False):
    """Decide once whether output is styled."""
    global _enabled
    _enabled = not (nocolor or os.environ.get('NO_COLOR') or not sys.stdout.isatty())


def _style(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}" if _enabled else text


def error(text: str) -> str:
    return _style(text, _RED)


def warning(text: str) -> str:
    return _style(text, _YELLOW)


def success(text: str) -> str:
    return _style(text, _GREEN)


def package(name: str) -> str:
    """Package names stand out in bold."""
    return _style(name, _BOLD)


def count(n: int) -> str:
    return package(str(n))


def fmt(value: PackageFormat) -> str:
    """Format name in that format's colour."""
    return _style(value.value, _FORMAT_COLORS[value])


def distro(codename: str, value: PackageFormat) -> str:
    """Distribution codename in the colour of its package format."""
    return _style(codename, _FORMAT_COLORS[value])


def cause(text: str) -> str:
    """Failure cause: yellow when a retry or split may help, red otherwise."""
    return warning(text) if text in _RETRYABLE_CAUSES else error(text)
