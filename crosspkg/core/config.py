"""
Runtime settings for crosspkg.

Lookup order (first existing file wins):
    1. the path given with --config
    2. ~/.config/crosspkg/crosspkg.conf
    3. /etc/crosspkg.conf

File format (one setting per line):
    work_dir=/var/tmp/crosspkg
    jobs=8
    max_artifact_size=95000000
    runtime=docker
    query_timeout=600
    fetch_timeout=900
    build_timeout=1800
    # Comments start with #
"""

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

USER_CONFIG_FILE = Path.home() / ".config" / "crosspkg" / "crosspkg.conf"
SYSTEM_CONFIG_FILE = Path("/etc/crosspkg.conf")

DEFAULT_WORK_DIR = Path.home() / ".cache" / "crosspkg"
DEFAULT_JOBS = 4
# Artifacts above 95 MB (decimal) are not published
DEFAULT_MAX_ARTIFACT_SIZE = 95 * 1000 * 1000
DEFAULT_QUERY_TIMEOUT = 600
DEFAULT_FETCH_TIMEOUT = 900
DEFAULT_BUILD_TIMEOUT = 1800

# Cache for loaded settings (avoid re-reading the file for every call)
_cached_settings: Optional['Settings'] = None


@dataclass
class Settings:
    """Effective settings."""
    work_dir: Path = DEFAULT_WORK_DIR
    jobs: int = DEFAULT_JOBS
    max_artifact_size: int = DEFAULT_MAX_ARTIFACT_SIZE
    runtime: Optional[str] = None       # 'docker', 'podman' or None (auto-detect)
    query_timeout: int = DEFAULT_QUERY_TIMEOUT
    fetch_timeout: int = DEFAULT_FETCH_TIMEOUT
    build_timeout: int = DEFAULT_BUILD_TIMEOUT


def _read_config_file(path: Path) -> Optional[dict]:
    """Read a key=value config file.

    Returns:
        Dict with config values, or None if the file doesn't exist
    """
    if not path.exists():
        return None

    config = {}
    try:
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                if '=' in line:
                    key, value = line.split('=', 1)
                    config[key.strip()] = value.strip()
    except OSError as e:
        logger.warning(f"Cannot read {path}: {e}")
        return None

    return config


def _apply(settings: Settings, values: dict, source: Path) -> Settings:
    known = {f.name for f in fields(Settings)}
    updates = {}
    for key, value in values.items():
        if key not in known:
            logger.warning(f"{source}: unknown setting '{key}' ignored")
            continue
        if key == 'work_dir':
            updates[key] = Path(value).expanduser()
        elif key == 'runtime':
            updates[key] = value or None
        else:
            try:
                updates[key] = int(value)
            except ValueError:
                logger.warning(f"{source}: {key}={value} is not a number, ignored")
    return replace(settings, **updates)


def load_settings(path: Optional[Union[str, Path]] = None, reload: bool = False) -> Settings:
    """Load settings from the first config file found.

    Args:
        path: Explicit config file (takes precedence over default locations)
        reload: Ignore the cached settings

    Returns:
        Settings with defaults for everything not configured
    """
    global _cached_settings
    if _cached_settings is not None and path is None and not reload:
        return _cached_settings

    candidates = [Path(path).expanduser()] if path else [USER_CONFIG_FILE, SYSTEM_CONFIG_FILE]
    settings = Settings()
    for candidate in candidates:
        values = _read_config_file(candidate)
        if values is not None:
            logger.debug(f"Using settings from {candidate}")
            settings = _apply(settings, values, candidate)
            break
    else:
        if path:
            logger.warning(f"Config file {path} not found, using defaults")

    _cached_settings = settings
    return settings
