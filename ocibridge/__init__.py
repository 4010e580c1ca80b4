"""Container image references, OCI directories, skopeo copies and ostree image metadata."""

__version__ = "0.1.0"

__all__ = [
    "environment",
    "fetch",
    "layout",
    "manifest",
    "ocidir",
    "reference",
    "skopeo",
    "state",
    "verify",
]