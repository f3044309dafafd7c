"""
Dependency name translation between distro naming conventions.

Name map file, one concept per line, deb name first:

    # comments allowed
    libsdl2-2.0-0 = rpm:SDL2, pac:sdl2
    zlib1g rpm:zlib pac:zlib

Resolver mapping file, written after dependencies were rebuilt under a
prefixed name:

    libfoo1=noble-libfoo1
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .formats import PackageFormat

logger = logging.getLogger(__name__)

_FORMAT_TAGS = {
    'deb': PackageFormat.DEB,
    'rpm': PackageFormat.RPM,
    'pac': PackageFormat.PACMAN,
    'pacman': PackageFormat.PACMAN,
}


def parse_map_line(line: str) -> Optional[Dict[PackageFormat, str]]:
    """Parse one name map line into {format: name}; None for blank/comment lines."""
    line = line.split('#', 1)[0].strip()
    if not line:
        return None

    if '=' in line.split(':', 1)[0]:
        head, _, tokens = line.partition('=')
    else:
        parts = line.split(None, 1)
        head, tokens = parts[0], parts[1] if len(parts) > 1 else ''
    names = {PackageFormat.DEB: head.strip()}

    for token in re.split(r'[,\s]+', tokens.strip()):
        if ':' not in token:
            continue
        tag, name = token.split(':', 1)
        fmt = _FORMAT_TAGS.get(tag.strip().lower())
        if fmt and name.strip():
            names[fmt] = name.strip()
    return names


def read_mapping(path: Union[str, Path]) -> Dict[str, str]:
    """Read ``original=prefixed`` lines written by the resolver."""
    mapping = {}
    path = Path(path)
    if not path.exists():
        return mapping
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        original, prefixed = line.split('=', 1)
        mapping[original.strip()] = prefixed.strip()
    return mapping


def write_mapping(path: Union[str, Path], pairs: List[Tuple[str, str]], append: bool = True):
    """Write ``original=prefixed`` lines; appends by default, the file only grows."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'a' if append else 'w') as f:
        for original, prefixed in pairs:
            f.write(f"{original}={prefixed}\n")


class DepNameMap:
    """Translate dependency names from one format's naming to another's."""

    def __init__(self, entries: Optional[List[Dict[PackageFormat, str]]] = None,
                 overrides: Optional[Dict[str, str]] = None):
        self.entries = entries or []
        self.overrides = dict(overrides or {})
        self._index: Dict[Tuple[PackageFormat, str], Dict[PackageFormat, str]] = {}
        for entry in self.entries:
            for fmt, name in entry.items():
                # First line wins, as with a top-down grep
                self._index.setdefault((fmt, name), entry)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None,
             mapping_path: Optional[Union[str, Path]] = None) -> 'DepNameMap':
        """Load a name map file and optionally a resolver mapping file.

        Missing files give an empty map, so every name passes through.
        """
        entries = []
        if path:
            path = Path(path)
            if path.exists():
                for line in path.read_text().splitlines():
                    entry = parse_map_line(line)
                    if entry:
                        entries.append(entry)
                logger.debug(f"Loaded {len(entries)} dependency name mappings from {path}")
            else:
                logger.warning(f"Dependency name map {path} not found, names pass through")
        overrides = read_mapping(mapping_path) if mapping_path else {}
        return cls(entries, overrides)

    def translate(self, name: str, source: Union[str, PackageFormat],
                  target: Union[str, PackageFormat]) -> str:
        """Name of dependency ``name`` (in source naming) in target naming.

        Names without a mapping pass through unchanged. Resolver overrides
        (original -> prefixed) apply last.
        """
        source = PackageFormat.parse(source)
        target = PackageFormat.parse(target)
        if name in self.overrides:
            return self.overrides[name]

        translated = name
        if source != target:
            entry = self._index.get((source, name))
            if entry and target in entry:
                translated = entry[target]
        return self.overrides.get(translated, translated)

    def __len__(self) -> int:
        return len(self.entries)
