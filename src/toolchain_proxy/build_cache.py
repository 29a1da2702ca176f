from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Iterable

import click


LOGGER = logging.getLogger(__name__)

CACHING_BUILD_TOOLS = frozenset({"cmake"})
NON_CONFIGURING_OPTIONS = frozenset({"--help", "--build"})
CACHE_MARKER_FILE = "CMakeCache.txt"
STALE_CACHE_DIRS = ("CMakeFiles",)
STALE_CACHE_FILES = ("CMakeCache.txt", "cmake_install.cmake", "Makefile")


def should_purge(tool_name: str, args: Iterable[str]) -> bool:
    """A configure run can pick up absolute paths cached by a previous run in a different frame."""
    if tool_name not in CACHING_BUILD_TOOLS:
        return False
    return not any(str(arg) in NON_CONFIGURING_OPTIONS for arg in args)


def purge_stale_cache(directory: Path) -> bool:
    if not (directory / CACHE_MARKER_FILE).is_file():
        return False

    click.echo("-- Removing build artifacts")
    for name in STALE_CACHE_DIRS:
        shutil.rmtree(directory / name, ignore_errors=True)
    for name in STALE_CACHE_FILES:
        try:
            (directory / name).unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            LOGGER.warning("Unable to remove stale build file %s: %s", directory / name, exc)
    return True
