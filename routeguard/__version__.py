"""Version information for the routeguard package (PEP 440)."""

from __future__ import annotations

__version__ = "0.1.0"

VERSION_INFO = tuple(int(part) for part in __version__.split(".")[:3])

PACKAGE_NAME = "routeguard"


def get_version() -> str:
    return __version__


__all__ = ["__version__", "VERSION_INFO", "PACKAGE_NAME", "get_version"]
