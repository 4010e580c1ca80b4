"""Detection of whether the running process is inside an ostree-native container."""

from __future__ import annotations

import configparser
import os
from collections.abc import Iterable, Mapping
from pathlib import Path

V0_REPO_CONFIG = "/sysroot/config"
V1_REPO_CONFIG = "/sysroot/ostree/repo/config"
REPO_CONFIG_PATHS = (V1_REPO_CONFIG, V0_REPO_CONFIG)

CONTAINER_MARKERS = ("/run/.containerenv", "/.dockerenv")
BOOTED_MARKER = "/run/ostree-booted"

BARE_SPLIT_XATTRS_MODE = "bare-split-xattrs"


class NotInContainerError(RuntimeError):
    """Raised when an ostree-based container environment is required but absent."""


def running_in_container(
    environ: Mapping[str, str] | None = None,
    markers: Iterable[str | os.PathLike] = CONTAINER_MARKERS,
) -> bool:
    """Best-effort check for running inside a container."""
    env = os.environ if environ is None else environ
    if "container" in env:
        return True
    return any(Path(marker).exists() for marker in markers)


def _read_first_existing(paths: Iterable[str | os.PathLike]) -> str | None:
    for path in paths:
        try:
            return Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
    return None


def is_bare_split_xattrs(config_paths: Iterable[str | os.PathLike] = REPO_CONFIG_PATHS) -> bool:
    """Return whether the first repository config found uses ``bare-split-xattrs`` mode."""
    text = _read_first_existing(config_paths)
    if text is None:
        return False
    parser = configparser.ConfigParser(
        interpolation=None, delimiters=("=",), comment_prefixes=("#",), strict=False
    )
    parser.optionxform = str
    try:
        parser.read_string(text)
    except configparser.Error as e:
        raise ValueError(f"Invalid repository config: {e}") from e
    return parser.get("core", "mode", fallback=None) == BARE_SPLIT_XATTRS_MODE


def is_ostree_container(
    environ: Mapping[str, str] | None = None,
    config_paths: Iterable[str | os.PathLike] = REPO_CONFIG_PATHS,
    markers: Iterable[str | os.PathLike] = CONTAINER_MARKERS,
    booted_marker: str | os.PathLike = BOOTED_MARKER,
) -> bool:
    """Return whether the booted filesystem appears to be an ostree-native container."""
    env = os.environ if environ is None else environ
    if not is_bare_split_xattrs(config_paths):
        return False
    running_in_systemd = "INVOCATION_ID" in env
    return running_in_container(env, markers) or (
        not running_in_systemd and not Path(booted_marker).exists()
    )


def require_ostree_container(
    environ: Mapping[str, str] | None = None,
    config_paths: Iterable[str | os.PathLike] = REPO_CONFIG_PATHS,
    markers: Iterable[str | os.PathLike] = CONTAINER_MARKERS,
    booted_marker: str | os.PathLike = BOOTED_MARKER,
) -> None:
    """Raise :class:`NotInContainerError` unless in an ostree-based container."""
    if not is_ostree_container(environ, config_paths, markers, booted_marker):
        raise NotInContainerError("Not in an ostree-based container environment")