"""Reading and writing OCI image layout directories."""

from __future__ import annotations

import hashlib
import json
import os
import platform as _platform
import shutil
import sys
import tarfile
import tempfile
import zlib
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO

BLOBDIR = "blobs/sha256"
"""Path inside an OCI directory to the blobs."""

OCI_TAG_ANNOTATION = "org.opencontainers.image.ref.name"
SCHEMA_VERSION = 2

MEDIA_TYPE_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_IMAGE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"

_OCI_LAYOUT = b'{"imageLayoutVersion":"1.0.0"}'
_TMP_PREFIX = ".tmp-"

_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}
_OPERATING_SYSTEMS = {"linux": "linux", "darwin": "darwin", "win32": "windows"}


class OciDirError(RuntimeError):
    """Raised when an OCI directory does not have the expected content."""


def _default_platform() -> dict[str, str]:
    machine = _platform.machine().lower()
    return {
        "architecture": _ARCHITECTURES.get(machine, machine),
        "os": _OPERATING_SYSTEMS.get(sys.platform, sys.platform),
    }


def _encode_canonical(value: Any, out: list[str]) -> None:
    if value is None:
        out.append("null")
    elif value is True:
        out.append("true")
    elif value is False:
        out.append("false")
    elif isinstance(value, int):
        out.append(str(value))
    elif isinstance(value, float):
        raise ValueError("Floating point numbers are not allowed in canonical JSON")
    elif isinstance(value, str):
        out.append('"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"')
    elif isinstance(value, Mapping):
        out.append("{")
        for index, key in enumerate(sorted(value)):
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, not {type(key).__name__}")
            if index:
                out.append(",")
            _encode_canonical(key, out)
            out.append(":")
            _encode_canonical(value[key], out)
        out.append("}")
    elif isinstance(value, (list, tuple)):
        out.append("[")
        for index, item in enumerate(value):
            if index:
                out.append(",")
            _encode_canonical(item, out)
        out.append("]")
    else:
        raise TypeError(f"Cannot serialize {type(value).__name__} as JSON")


def canonical_json(value: Any) -> bytes:
    """Serialize ``value`` as canonical JSON: sorted keys, no whitespace, minimal escaping."""
    out: list[str] = []
    _encode_canonical(value, out)
    return "".join(out).encode("utf-8")


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmpname = tempfile.mkstemp(dir=path.parent, prefix=_TMP_PREFIX)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmpname, 0o644)
        os.replace(tmpname, path)
    except BaseException:
        Path(tmpname).unlink(missing_ok=True)
        raise


def _parse_one_filename(s: str) -> str:
    name = PurePosixPath(s).name
    if name in ("", ".."):
        raise ValueError(f"Invalid filename {s}")
    return name


@dataclass(frozen=True)
class Blob:
    """Completed blob metadata."""

    sha256: str
    size: int

    def digest_id(self) -> str:
        """The OCI standard ``algorithm:checksum`` form."""
        return f"sha256:{self.sha256}"

    def descriptor(self) -> dict[str, Any]:
        return {"digest": self.digest_id(), "size": self.size}


@dataclass(frozen=True)
class Layer:
    """Completed layer metadata."""

    blob: Blob
    uncompressed_sha256: str

    def descriptor(self) -> dict[str, Any]:
        return self.blob.descriptor()


class BlobWriter:
    """Writes a new blob into an OCI directory, naming it by its SHA-256 on completion."""

    def __init__(self, directory: str | os.PathLike) -> None:
        self._root = Path(directory)
        self._hash = hashlib.sha256()
        self.size = 0
        fd, tmpname = tempfile.mkstemp(dir=self._root / BLOBDIR, prefix=_TMP_PREFIX)
        self._tmpname = Path(tmpname)
        self._file: BinaryIO | None = os.fdopen(fd, "wb")

    def _target(self) -> BinaryIO:
        if self._file is None:
            raise OciDirError("Blob writer is already finished")
        return self._file

    def write(self, data: bytes) -> int:
        self._target().write(data)
        self._hash.update(data)
        self.size += len(data)
        return len(data)

    def flush(self) -> None:
        self._target().flush()

    def complete(self) -> Blob:
        """Finish writing and move the blob into place."""
        target = self._target()
        target.close()
        self._file = None
        sha256 = self._hash.hexdigest()
        os.chmod(self._tmpname, 0o644)
        os.replace(self._tmpname, self._root / BLOBDIR / sha256)
        return Blob(sha256=sha256, size=self.size)

    def abort(self) -> None:
        """Discard the partially written blob."""
        if self._file is not None:
            self._file.close()
            self._file = None
            self._tmpname.unlink(missing_ok=True)

    def __enter__(self) -> BlobWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.abort()


class RawLayerWriter:
    """Writes a gzip-compressed layer blob, tracking the uncompressed digest too."""

    def __init__(self, directory: str | os.PathLike, compresslevel: int | None = None) -> None:
        self._blob = BlobWriter(directory)
        self._uncompressed_hash = hashlib.sha256()
        level = zlib.Z_DEFAULT_COMPRESSION if compresslevel is None else compresslevel
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, 31)

    def write(self, data: bytes) -> int:
        self._blob.write(self._compressor.compress(data))
        self._uncompressed_hash.update(data)
        return len(data)

    def flush(self) -> None:
        self._blob.flush()

    def complete(self) -> Layer:
        """Flush the compressor and put the blob in place."""
        self._blob.write(self._compressor.flush())
        blob = self._blob.complete()
        return Layer(blob=blob, uncompressed_sha256=self._uncompressed_hash.hexdigest())

    def abort(self) -> None:
        self._blob.abort()

    def __enter__(self) -> RawLayerWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.abort()


class _TarLayer:
    """A tar stream written into a layer blob."""

    def __init__(self, raw: RawLayerWriter) -> None:
        self._raw = raw
        self.tar = tarfile.open(fileobj=raw, mode="w|", format=tarfile.GNU_FORMAT)

    def addfile(self, tarinfo: tarfile.TarInfo, fileobj: BinaryIO | None = None) -> None:
        self.tar.addfile(tarinfo, fileobj)

    def add(self, name: str | os.PathLike, arcname: str | None = None, recursive: bool = True) -> None:
        self.tar.add(name, arcname=arcname, recursive=recursive)

    def complete(self) -> Layer:
        self.tar.close()
        return self._raw.complete()

    def abort(self) -> None:
        self._raw.abort()

    def __enter__(self) -> _TarLayer:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.abort()


def write_json_blob(directory: str | os.PathLike, value: Any, media_type: str) -> dict[str, Any]:
    """Write ``value`` as a canonical JSON blob and return its descriptor."""
    with BlobWriter(directory) as w:
        w.write(canonical_json(value))
        blob = w.complete()
    return {"mediaType": media_type, **blob.descriptor()}


def _empty_config_descriptor() -> dict[str, Any]:
    # Placeholder so that a manifest is valid before its real config is written.
    return {
        "mediaType": MEDIA_TYPE_IMAGE_CONFIG,
        "size": 7023,
        "digest": "sha256:a5b2b2c507a0944348e0303114d8d93aaaa081732b86451d9bce1f432a537bc7",
    }


def new_empty_manifest() -> dict[str, Any]:
    """Return a valid manifest with a placeholder config and no layers."""
    return {"schemaVersion": SCHEMA_VERSION, "config": _empty_config_descriptor(), "layers": []}


@dataclass(frozen=True)
class OciDir:
    """An opened OCI directory."""

    path: Path

    @classmethod
    def create(cls, path: str | os.PathLike) -> OciDir:
        """Initialize an OCI layout in ``path`` and open it."""
        root = Path(path)
        (root / BLOBDIR).mkdir(mode=0o755, parents=True, exist_ok=True)
        _atomic_write(root / "oci-layout", _OCI_LAYOUT)
        return cls.open(root)

    @classmethod
    def open(cls, path: str | os.PathLike) -> OciDir:
        root = Path(path)
        if not root.is_dir():
            raise NotADirectoryError(f"Not a directory: {root}")
        return cls(root)

    def clone_to(self, dest: str | os.PathLike) -> OciDir:
        """Create a new OCI directory at ``dest`` holding copies of all blobs."""
        target = Path(dest)
        target.mkdir()
        cloned = OciDir.create(target)
        for entry in (self.path / BLOBDIR).iterdir():
            if entry.is_file() and not entry.name.startswith(_TMP_PREFIX):
                shutil.copyfile(entry, cloned.path / BLOBDIR / entry.name)
        return cloned

    def create_raw_layer(self, compresslevel: int | None = None) -> RawLayerWriter:
        return RawLayerWriter(self.path, compresslevel)

    def create_layer(self, compresslevel: int | None = None) -> _TarLayer:
        """Create a tar output stream backed by a layer blob."""
        return _TarLayer(self.create_raw_layer(compresslevel))

    def push_layer(
        self,
        manifest: dict[str, Any],
        config: dict[str, Any],
        layer: Layer,
        description: str,
        annotations: Mapping[str, str] | None = None,
    ) -> None:
        """Add a layer to the top of the image stack; the first pushed layer is the root."""
        descriptor = {"mediaType": MEDIA_TYPE_IMAGE_LAYER_GZIP, **layer.descriptor()}
        if annotations is not None:
            descriptor["annotations"] = dict(annotations)
        manifest.setdefault("layers", []).append(descriptor)
        rootfs = config.setdefault("rootfs", {"type": "layers", "diff_ids": []})
        rootfs.setdefault("diff_ids", []).append(f"sha256:{layer.uncompressed_sha256}")
        created = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        config.setdefault("history", []).append({"created": created, "created_by": description})

    def _descriptor_path(self, descriptor: Mapping[str, Any]) -> Path:
        digest = descriptor["digest"]
        alg, found, hexdigest = digest.partition(":")
        if not found:
            raise ValueError(f"Invalid digest {digest}")
        if _parse_one_filename(alg) != "sha256":
            raise ValueError(f"Unsupported digest algorithm {digest}")
        return self.path / BLOBDIR / _parse_one_filename(hexdigest)

    def read_blob(self, descriptor: Mapping[str, Any]) -> BinaryIO:
        """Open a blob for reading."""
        return open(self._descriptor_path(descriptor), "rb")

    def read_json_blob(self, descriptor: Mapping[str, Any]) -> Any:
        with self.read_blob(descriptor) as f:
            try:
                return json.load(f)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ValueError(f"Parsing object {descriptor['digest']}: {e}") from e

    def write_config(self, config: Mapping[str, Any]) -> dict[str, Any]:
        """Write an image configuration blob and return its descriptor."""
        return write_json_blob(self.path, config, MEDIA_TYPE_IMAGE_CONFIG)

    def _write_manifest(
        self, manifest: Mapping[str, Any], platform: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        descriptor = write_json_blob(self.path, manifest, MEDIA_TYPE_IMAGE_MANIFEST)
        descriptor["platform"] = dict(platform) if platform is not None else _default_platform()
        return descriptor

    def _write_index(self, index: Mapping[str, Any]) -> None:
        _atomic_write(self.path / "index.json", canonical_json(index))

    def _load_index(self) -> dict[str, Any]:
        try:
            with open(self.path / "index.json", "rb") as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise OciDirError("Failed to open index.json") from e

    def insert_manifest(
        self,
        manifest: Mapping[str, Any],
        tag: str | None = None,
        platform: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Write a manifest blob and add a reference to it to the index."""
        descriptor = self._write_manifest(manifest, platform)
        if tag is not None:
            descriptor["annotations"] = {OCI_TAG_ANNOTATION: tag}
        try:
            index = self._load_index()
        except OciDirError:
            index = {"schemaVersion": SCHEMA_VERSION, "manifests": []}
        index["manifests"] = [*index.get("manifests", []), descriptor]
        self._write_index(index)
        return descriptor

    def replace_with_single_manifest(
        self, manifest: Mapping[str, Any], platform: Mapping[str, Any] | None = None
    ) -> None:
        """Write a manifest blob and make it the only entry of the index."""
        descriptor = self._write_manifest(manifest, platform)
        self._write_index({"schemaVersion": SCHEMA_VERSION, "manifests": [descriptor]})

    def read_manifest(self) -> Any:
        """Return the single manifest of this directory; error if there is not exactly one."""
        return self.read_manifest_and_descriptor()[0]

    def find_manifest_with_tag(self, tag: str) -> Any | None:
        for descriptor in self._load_index().get("manifests", []):
            if (descriptor.get("annotations") or {}).get(OCI_TAG_ANNOTATION) == tag:
                return self.read_json_blob(descriptor)
        return None

    def read_manifest_and_descriptor(self) -> tuple[Any, dict[str, Any]]:
        manifests = self._load_index().get("manifests", [])
        match manifests:
            case []:
                raise OciDirError("No manifests found")
            case [descriptor]:
                return self.read_json_blob(descriptor), descriptor
            case _:
                raise OciDirError(f"Expected exactly 1 manifest, found {len(manifests)}")