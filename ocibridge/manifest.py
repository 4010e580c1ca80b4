"""Comparing image manifests and reading version information from image configs."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .reference import LABEL_VERSION

ANNOTATION_VERSION = "org.opencontainers.image.version"
"""The standard OCI label/annotation holding the version of the packaged software."""

_SIZE_UNITS = ("kB", "MB", "GB", "TB", "PB", "EB")
_SIZE_FACTOR = 1000


def format_size(size: int) -> str:
    """Format a byte count for humans using SI (powers of 1000) units."""
    if size < 0:
        raise ValueError(f"Size must not be negative: {size}")
    if size < _SIZE_FACTOR:
        return f"{size} byte" if size == 1 else f"{size} bytes"
    divisor = _SIZE_FACTOR
    unit = _SIZE_UNITS[0]
    for candidate in _SIZE_UNITS[1:]:
        if size < divisor * _SIZE_FACTOR:
            break
        divisor *= _SIZE_FACTOR
        unit = candidate
    return f"{size / divisor:.1f} {unit}"


def labels_of(config: Mapping[str, Any]) -> Mapping[str, str] | None:
    """Return the container labels of an image configuration, if present."""
    container_config = config.get("config")
    if not container_config:
        return None
    return container_config.get("Labels")


def version_for_config(config: Mapping[str, Any]) -> str | None:
    """Return the version from an image configuration's labels, if any."""
    labels = labels_of(config)
    if labels is None:
        return None
    for key in (ANNOTATION_VERSION, LABEL_VERSION):
        if key in labels:
            return labels[key]
    return None


def _layersum(layers: Iterable[Mapping[str, Any]]) -> int:
    return sum(int(layer["size"]) for layer in layers)


@dataclass(frozen=True)
class ManifestDiff:
    """The difference in layer content between two OCI image manifests."""

    src: Mapping[str, Any]
    dest: Mapping[str, Any]
    removed: list[Mapping[str, Any]]
    """Layers present in the old image but not the new one, sorted by digest."""
    added: list[Mapping[str, Any]]
    """Layers present in the new image but not the old one, sorted by digest."""
    total: int
    total_size: int
    n_removed: int
    removed_size: int
    n_added: int
    added_size: int

    @classmethod
    def from_manifests(cls, src: Mapping[str, Any], dest: Mapping[str, Any]) -> ManifestDiff:
        """Compute the layer difference between two manifests."""
        src_layers = {layer["digest"]: layer for layer in src.get("layers", [])}
        dest_layers = {layer["digest"]: layer for layer in dest.get("layers", [])}
        removed = sorted(
            (d for digest, d in src_layers.items() if digest not in dest_layers),
            key=lambda d: d["digest"],
        )
        added = sorted(
            (d for digest, d in dest_layers.items() if digest not in src_layers),
            key=lambda d: d["digest"],
        )
        return cls(
            src=src,
            dest=dest,
            removed=removed,
            added=added,
            total=len(dest_layers),
            total_size=_layersum(dest.get("layers", [])),
            n_removed=len(removed),
            removed_size=_layersum(removed),
            n_added=len(added),
            added_size=_layersum(added),
        )

    def render(self) -> str:
        """Describe the total, removed and added layers as three lines of text."""
        return "\n".join(
            [
                f"Total new layers: {self.total:<4}  Size: {format_size(self.total_size)}",
                f"Removed layers:   {self.n_removed:<4}  Size: {format_size(self.removed_size)}",
                f"Added layers:     {self.n_added:<4}  Size: {format_size(self.added_size)}",
            ]
        )

    def print(self) -> None:
        """Print the summary produced by :meth:`render`."""
        print(self.render())