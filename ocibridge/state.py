"""State of pulled and pending container images, and the layers they consist of."""

from __future__ import annotations

import enum
import itertools
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .layout import LayoutError
from .manifest import format_size, version_for_config

CACHED_KEY_MANIFEST_DIGEST = "ostree-ext.cached.manifest-digest"
"""Detached commit metadata key holding the digest of a pending update's manifest."""

CACHED_KEY_MANIFEST = "ostree-ext.cached.manifest"
"""Detached commit metadata key holding a pending update's manifest as JSON."""

CACHED_KEY_CONFIG = "ostree-ext.cached.config"
"""Detached commit metadata key holding a pending update's configuration as JSON."""

_MISSING = object()


class ImportProgressKind(enum.Enum):
    """The stage of a layer fetch being reported."""

    OSTREE_CHUNK_STARTED = "ostree-chunk-started"
    OSTREE_CHUNK_COMPLETED = "ostree-chunk-completed"
    DERIVED_LAYER_STARTED = "derived-layer-started"
    DERIVED_LAYER_COMPLETED = "derived-layer-completed"


_STARTING_KINDS = frozenset(
    {ImportProgressKind.OSTREE_CHUNK_STARTED, ImportProgressKind.DERIVED_LAYER_STARTED}
)


@dataclass(frozen=True)
class ImportProgress:
    """Tracks the start and end of fetching one layer."""

    kind: ImportProgressKind
    descriptor: Mapping[str, Any]

    def is_starting(self) -> bool:
        """Return whether this signifies the start of a new layer being fetched."""
        return self.kind in _STARTING_KINDS


@dataclass(frozen=True)
class LayerProgress:
    """Byte-level progress of a layer fetch."""

    layer_index: int
    """Index of the layer in the manifest."""
    fetched: int
    """Number of bytes downloaded."""
    total: int
    """Total number of bytes outstanding."""


@dataclass
class ManifestLayerState:
    """A container image layer with its downloaded-or-not state."""

    layer: Mapping[str, Any]
    ostree_ref: str
    """The ostree ref name for this layer."""
    commit: str | None = None
    """The ostree commit caching this layer, if present."""

    def digest(self) -> str:
        """The cryptographic checksum."""
        return self.layer["digest"]

    def size(self) -> int:
        """The (possibly compressed) size."""
        return int(self.layer["size"])


@dataclass(frozen=True)
class CachedImageUpdate:
    """Locally cached metadata for an update to an existing image."""

    manifest: Any
    config: Any
    manifest_digest: str

    def version(self) -> str | None:
        """Retrieve the container image version."""
        return version_for_config(self.config)


@dataclass
class LayeredImageState:
    """State of an already pulled layered image."""

    base_commit: str
    merge_commit: str
    is_layered: bool
    manifest_digest: str
    manifest: Any
    configuration: Any | None = None
    """The image configuration; may be unavailable for old images."""
    cached_update: CachedImageUpdate | None = None

    def get_commit(self) -> str:
        """Return the merge commit for layered images, otherwise the base commit."""
        return self.merge_commit if self.is_layered else self.base_commit

    def version(self) -> str | None:
        """Retrieve the container image version."""
        if self.configuration is None:
            return None
        return version_for_config(self.configuration)


@dataclass
class PreparedImport:
    """Information about which layers need to be downloaded."""

    manifest_digest: str
    manifest: Any
    config: Any
    ostree_commit_layer: ManifestLayerState
    ostree_layers: list[ManifestLayerState] = field(default_factory=list)
    layers: list[ManifestLayerState] = field(default_factory=list)
    previous_state: LayeredImageState | None = None
    previous_manifest_digest: str | None = None
    previous_imageid: str | None = None

    def all_layers(self) -> Iterator[ManifestLayerState]:
        """Iterate over the commit layer, the ostree chunk layers, then derived layers."""
        return itertools.chain((self.ostree_commit_layer,), self.ostree_layers, self.layers)

    def version(self) -> str | None:
        """Retrieve the container image version."""
        return version_for_config(self.config)

    def deprecated_warning(self) -> str | None:
        """Return a message if the image uses deprecated features."""
        return None

    def layers_with_history(self) -> Iterator[tuple[ManifestLayerState, Mapping[str, Any]]]:
        """Pair every layer with its history entry; raise if the history runs short."""
        history = iter(self.config.get("history") or [])
        for layer in self.all_layers():
            entry = next(history, _MISSING)
            if entry is _MISSING:
                raise LayoutError("Truncated history")
            yield layer, entry

    def layers_to_fetch(self) -> Iterator[tuple[ManifestLayerState, str]]:
        """Yield layers not yet present, with their history description."""
        for layer, entry in self.layers_with_history():
            if layer.commit is None:
                yield layer, entry.get("created_by") or ""

    def format_layer_status(self) -> str | None:
        """Summarize stored and needed layers, or None if nothing needs fetching."""
        stored = to_fetch = to_fetch_size = 0
        for layer in self.all_layers():
            if layer.commit is not None:
                stored += 1
            else:
                to_fetch += 1
                to_fetch_size += layer.size()
        if not to_fetch:
            return None
        size = format_size(to_fetch_size)
        return f"layers already present: {stored}; layers needed: {to_fetch} ({size})"


def _cached_json(meta: Mapping[str, Any], key: str) -> Any:
    value = meta.get(key)
    if not isinstance(value, str):
        raise LayoutError(f"Expected cached manifest {key}")
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise LayoutError(f"Parsing {key}: {e}") from e


def parse_cached_update(meta: Mapping[str, Any]) -> CachedImageUpdate | None:
    """Parse a pending update stored in detached commit metadata, if there is one."""
    manifest_digest = meta.get(CACHED_KEY_MANIFEST_DIGEST)
    if manifest_digest is None:
        # Other tools may write detached metadata without our keys.
        return None
    if not isinstance(manifest_digest, str):
        raise LayoutError(f"Expected string for {CACHED_KEY_MANIFEST_DIGEST}")
    manifest = _cached_json(meta, CACHED_KEY_MANIFEST)
    config = _cached_json(meta, CACHED_KEY_CONFIG)
    return CachedImageUpdate(manifest=manifest, config=config, manifest_digest=manifest_digest)