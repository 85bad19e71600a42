"""Package version lookup.

A source checkout reads ``[project].version`` straight from pyproject.toml so
the CLI and the CalDAV User-Agent report the same number before the package
is installed. An installed wheel answers from its distribution metadata.
"""

from functools import lru_cache
from importlib import metadata
from pathlib import Path
from typing import Final

import tomllib

DISTRIBUTION: Final[str] = "opentasks-sync"
UNKNOWN_VERSION: Final[str] = "0.0.0"

_SOURCE_PYPROJECT: Final[Path] = Path(__file__).resolve().parent.parent / "pyproject.toml"


def _version_from_source(pyproject: Path) -> str | None:
    if not pyproject.is_file():
        return None
    try:
        project = tomllib.loads(pyproject.read_text(encoding="utf-8")).get("project", {})
    except (OSError, tomllib.TOMLDecodeError):
        return None
    if project.get("name") != DISTRIBUTION:
        return None
    return project.get("version") or None


@lru_cache(maxsize=1)
def get_version() -> str:
    """Return the running opentasks-sync version string."""
    found = _version_from_source(_SOURCE_PYPROJECT)
    if found:
        return found
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return UNKNOWN_VERSION
