"""Container image references and the ostree signature verification schema."""

from __future__ import annotations

import enum
from dataclasses import dataclass

OSTREE_COMMIT_LABEL = "ostree.commit"
"""Label injected into a container image holding the ostree commit checksum."""

CONTENT_ANNOTATION = "ostree.components"
"""Layer annotation naming the packages/components that are part of it."""

COMPONENT_SEPARATOR = ","
"""Separator between values in :data:`CONTENT_ANNOTATION`."""

LABEL_VERSION = "version"
"""A commonly used pre-OCI label for versions."""


def _split_once(value: str, sep: str = ":") -> tuple[str, str] | None:
    head, found, tail = value.partition(sep)
    return (head, tail) if found else None


class Transport(enum.Enum):
    """A backend/transport for OCI/Docker images."""

    REGISTRY = "registry"
    OCI_DIR = "oci"
    OCI_ARCHIVE = "oci-archive"
    CONTAINER_STORAGE = "containers-storage"
    DIR = "dir"

    @classmethod
    def parse(cls, value: str) -> Transport:
        """Parse a transport name; ``docker`` is accepted as an alias of ``registry``."""
        if value == "docker":
            return cls.REGISTRY
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown transport '{value}'") from None

    def serializable_name(self) -> str:
        """Return a name that :meth:`parse` accepts back."""
        return self.value

    def __str__(self) -> str:
        return _TRANSPORT_PREFIXES[self]


_TRANSPORT_PREFIXES = {
    Transport.REGISTRY: "docker://",
    Transport.OCI_ARCHIVE: "oci-archive:",
    Transport.OCI_DIR: "oci:",
    Transport.CONTAINER_STORAGE: "containers-storage:",
    Transport.DIR: "dir:",
}


@dataclass(frozen=True)
class ImageReference:
    """Combination of an image name and its transport."""

    transport: Transport
    name: str

    @classmethod
    def parse(cls, value: str) -> ImageReference:
        parts = _split_once(value)
        if parts is None:
            raise ValueError(f"Missing ':' in {value}")
        transport_name, name = parts
        transport = Transport.parse(transport_name)
        if not name:
            raise ValueError(f"Invalid empty name in {value}")
        if transport_name == "docker":
            if not name.startswith("//"):
                raise ValueError(f"Missing // in docker:// in {value}")
            name = name[2:]
        return cls(transport, name)

    def __str__(self) -> str:
        return f"{self.transport}{self.name}"


class SignatureSourceKind(enum.Enum):
    """Policy for signature verification."""

    OSTREE_REMOTE = "ostree-remote-image"
    CONTAINER_POLICY = "ostree-image-signed"
    CONTAINER_POLICY_ALLOW_INSECURE = "ostree-unverified-image"


@dataclass(frozen=True)
class SignatureSource:
    """A signature verification mechanism; ``remote`` names the ostree remote if used."""

    kind: SignatureSourceKind
    remote: str | None = None

    def __post_init__(self) -> None:
        if (self.kind is SignatureSourceKind.OSTREE_REMOTE) != (self.remote is not None):
            raise ValueError("An ostree remote name is required exactly for ostree-remote-image")

    @classmethod
    def parse(cls, value: str) -> SignatureSource:
        if value == SignatureSourceKind.CONTAINER_POLICY.value:
            return cls(SignatureSourceKind.CONTAINER_POLICY)
        if value == SignatureSourceKind.CONTAINER_POLICY_ALLOW_INSECURE.value:
            return cls(SignatureSourceKind.CONTAINER_POLICY_ALLOW_INSECURE)
        prefix = SignatureSourceKind.OSTREE_REMOTE.value + ":"
        if value.startswith(prefix):
            return cls(SignatureSourceKind.OSTREE_REMOTE, value[len(prefix):])
        raise ValueError(f"Invalid signature source: {value}")

    def __str__(self) -> str:
        if self.kind is SignatureSourceKind.OSTREE_REMOTE:
            return f"{self.kind.value}:{self.remote}"
        return self.kind.value


@dataclass(frozen=True)
class OstreeImageReference:
    """A signature verification mechanism paired with a container image reference."""

    sigverify: SignatureSource
    imgref: ImageReference

    @classmethod
    def parse(cls, value: str) -> OstreeImageReference:
        parts = _split_once(value)
        if parts is None:
            raise ValueError(f"Missing ':' in {value}")
        first, second = parts
        match first:
            case "ostree-image-signed":
                sigverify = SignatureSource(SignatureSourceKind.CONTAINER_POLICY)
                rest = second
            case "ostree-unverified-image":
                sigverify = SignatureSource(SignatureSourceKind.CONTAINER_POLICY_ALLOW_INSECURE)
                rest = second
            case "ostree-unverified-registry":
                sigverify = SignatureSource(SignatureSourceKind.CONTAINER_POLICY_ALLOW_INSECURE)
                rest = f"registry:{second}"
            case "ostree-remote-registry" | "ostree-remote-image":
                remote_parts = _split_once(second)
                if remote_parts is None:
                    raise ValueError(f"Missing second ':' in {value}")
                remote, rest = remote_parts
                sigverify = SignatureSource(SignatureSourceKind.OSTREE_REMOTE, remote)
                if first == "ostree-remote-registry":
                    rest = f"registry:{rest}"
            case _:
                raise ValueError(f"Invalid ostree image reference scheme: {first}")
        return cls(sigverify, ImageReference.parse(rest))

    def __str__(self) -> str:
        if (
            self.sigverify.kind is SignatureSourceKind.CONTAINER_POLICY_ALLOW_INSECURE
            and self.imgref.transport is Transport.REGISTRY
        ):
            return f"ostree-unverified-registry:{self.imgref.name}"
        return f"{self.sigverify}:{self.imgref}"