"""Interpreting the layer layout of ostree-encapsulated container images."""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from .manifest import labels_of

logger = logging.getLogger(__name__)

META_MANIFEST_DIGEST = "ostree.manifest-digest"
"""Commit metadata key holding the manifest digest."""

META_MANIFEST = "ostree.manifest"
"""Commit metadata key holding the manifest serialized as JSON."""

META_CONFIG = "ostree.container.image-config"
"""Commit metadata key holding the image configuration serialized as JSON."""

ANNOTATION_CREATED = "org.opencontainers.image.created"
"""The standard OCI annotation holding the creation time."""


class LayoutError(ValueError):
    """Raised when an image does not have the expected ostree layout or metadata."""


class ExportLayout(enum.Enum):
    """Type of container image generated."""

    V0 = "ostree.diffid"
    """Legacy layout; recognized only to reject it."""
    V1 = "ostree.final-diffid"
    """The (optionally chunked) container image layout."""

    def label(self) -> str:
        """The config label that points at the last ostree layer."""
        return self.value


def layer_from_diffid(
    layout: ExportLayout,
    manifest: Mapping[str, Any],
    config: Mapping[str, Any],
    diffid: str,
) -> Mapping[str, Any]:
    """Return the manifest layer whose position matches ``diffid`` in the config rootfs."""
    diff_ids = (config.get("rootfs") or {}).get("diff_ids") or []
    try:
        idx = list(diff_ids).index(diffid)
    except ValueError:
        raise LayoutError(f"Missing {layout.label()} {diffid}") from None
    layers = manifest.get("layers") or []
    if idx >= len(layers):
        raise LayoutError(f"diffid position {idx} exceeds layer count {len(layers)}")
    return layers[idx]


def parse_manifest_layout(
    manifest: Mapping[str, Any], config: Mapping[str, Any]
) -> tuple[Mapping[str, Any], list[Mapping[str, Any]], list[Mapping[str, Any]]]:
    """Split the manifest layers into the ostree layer, chunk layers and derived layers."""
    layers = manifest.get("layers") or []
    if not layers:
        raise LayoutError("Parsing manifest layout: No layers in manifest")
    first_layer = layers[0]

    labels = labels_of(config) or {}
    found = next(
        (
            (layout, labels[layout.label()])
            for layout in (ExportLayout.V1, ExportLayout.V0)
            if layout.label() in labels
        ),
        None,
    )
    if found is None:
        raise LayoutError(
            f"Parsing manifest layout: No {ExportLayout.V1.label()} label found, "
            "not an ostree encapsulated container"
        )
    layout, target_diffid = found
    target_layer = layer_from_diffid(layout, manifest, config, target_diffid)

    if layout is ExportLayout.V0:
        raise LayoutError(
            f"This legacy format using the {layout.label()} label is no longer supported"
        )

    ostree_layer = first_layer
    chunk_layers: list[Mapping[str, Any]] = []
    derived_layers: list[Mapping[str, Any]] = []
    after_target = False
    for layer in layers:
        if layer == target_layer:
            if after_target:
                raise LayoutError(f"Multiple entries for {layer['digest']}")
            after_target = True
            if layer != ostree_layer:
                chunk_layers.append(layer)
        elif not after_target:
            if layer != ostree_layer:
                chunk_layers.append(layer)
        else:
            derived_layers.append(layer)
    return ostree_layer, chunk_layers, derived_layers


def _parse_rfc3339(value: str) -> int:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise ValueError(f"Timestamp lacks a time zone offset: {value}")
    return int(parsed.timestamp())


def timestamp_of_manifest_or_config(
    manifest: Mapping[str, Any], config: Mapping[str, Any]
) -> int | None:
    """Return the creation time of the manifest (preferred) or config; None on failure."""
    annotations = manifest.get("annotations") or {}
    timestamp = annotations.get(ANNOTATION_CREATED)
    if timestamp is None:
        timestamp = config.get("created")
    if timestamp is None:
        return None
    try:
        return _parse_rfc3339(timestamp)
    except (TypeError, ValueError) as e:
        logger.warning("Failed to parse manifest timestamp: %s", e)
        return None


def _lookup_string(meta: Mapping[str, Any], key: str) -> str | None:
    value = meta.get(key)
    if value is not None and not isinstance(value, str):
        raise LayoutError(f"Expected string for commit metadata key {key}")
    return value


def manifest_data_from_commitmeta(meta: Mapping[str, Any]) -> tuple[Any, str]:
    """Return the manifest and its digest stored in merge commit metadata."""
    context = "Reading manifest data from commit"
    digest = _lookup_string(meta, META_MANIFEST_DIGEST)
    if digest is None:
        raise LayoutError(f"{context}: Missing {META_MANIFEST_DIGEST} metadata on merge commit")
    serialized = _lookup_string(meta, META_MANIFEST)
    if serialized is None:
        raise LayoutError(f"{context}: Failed to find {META_MANIFEST} metadata key")
    try:
        manifest = json.loads(serialized)
    except json.JSONDecodeError as e:
        raise LayoutError(f"{context}: {e}") from e
    return manifest, digest


def image_config_from_commitmeta(meta: Mapping[str, Any]) -> Any | None:
    """Return the image configuration stored in commit metadata, if any."""
    serialized = _lookup_string(meta, META_CONFIG)
    # Old versions stored the literal string "null" here.
    if serialized is None or serialized == "null":
        return None
    try:
        return json.loads(serialized)
    except json.JSONDecodeError as e:
        raise LayoutError(str(e)) from e