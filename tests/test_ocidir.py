import gzip
import hashlib
import io
import json
import re
import tarfile

import pytest

from ocibridge.ocidir import (
    BLOBDIR,
    MEDIA_TYPE_IMAGE_CONFIG,
    MEDIA_TYPE_IMAGE_LAYER_GZIP,
    MEDIA_TYPE_IMAGE_MANIFEST,
    OCI_TAG_ANNOTATION,
    Blob,
    BlobWriter,
    OciDir,
    OciDirError,
    canonical_json,
    new_empty_manifest,
    write_json_blob,
)

MANIFEST_DERIVE = """{
    "schemaVersion": 2,
    "config": {
      "mediaType": "application/vnd.oci.image.config.v1+json",
      "digest": "sha256:54977ab597b345c2238ba28fe18aad751e5c59dc38b9393f6f349255f0daa7fc",
      "size": 754
    },
    "layers": [
      {
        "mediaType": "application/vnd.oci.image.layer.v1.tar+gzip",
        "digest": "sha256:ee02768e65e6fb2bb7058282338896282910f3560de3e0d6cd9b1d5985e8360d",
        "size": 5462
      },
      {
        "mediaType": "application/vnd.oci.image.layer.v1.tar+gzip",
        "digest": "sha256:d203cef7e598fa167cb9e8b703f9f20f746397eca49b51491da158d64968b429",
        "size": 214
      }
    ],
    "annotations": {
      "ostree.commit": "3cb6170b6945065c2475bc16d7bebcc84f96b4c677811a6751e479b89f8c3770",
      "ostree.version": "42.0"
    }
}"""

PLATFORM = {"architecture": "amd64", "os": "linux"}


@pytest.fixture
def ocidir(tmp_path):
    return OciDir.create(tmp_path / "oci")


def _config():
    return {"architecture": "amd64", "os": "linux", "rootfs": {"type": "layers", "diff_ids": []}}


def test_manifest_roundtrip(ocidir):
    desc = write_json_blob(ocidir.path, json.loads(MANIFEST_DERIVE), MEDIA_TYPE_IMAGE_MANIFEST)
    m = ocidir.read_json_blob(desc)
    assert (
        m["layers"][0]["digest"]
        == "sha256:ee02768e65e6fb2bb7058282338896282910f3560de3e0d6cd9b1d5985e8360d"
    )
    assert desc["mediaType"] == MEDIA_TYPE_IMAGE_MANIFEST


def test_build(ocidir):
    layerw = ocidir.create_raw_layer(None)
    layerw.write(b"pretend this is a tarball")
    root_layer = layerw.complete()
    assert (
        root_layer.uncompressed_sha256
        == "349438e5faf763e8875b43de4d7101540ef4d865190336c2cc549a11f33f8d7c"
    )
    manifest = new_empty_manifest()
    config = _config()
    ocidir.push_layer(manifest, config, root_layer, "root", None)
    manifest["config"] = ocidir.write_config(config)
    ocidir.replace_with_single_manifest(manifest, PLATFORM)

    read_manifest = ocidir.read_manifest()
    assert read_manifest == manifest

    ocidir.insert_manifest(manifest, "latest", PLATFORM)
    with pytest.raises(OciDirError, match="Expected exactly 1 manifest, found 2"):
        ocidir.read_manifest()
    assert ocidir.find_manifest_with_tag("noent") is None
    assert ocidir.find_manifest_with_tag("latest") == read_manifest


def test_create_writes_layout(ocidir):
    assert (ocidir.path / "oci-layout").read_bytes() == b'{"imageLayoutVersion":"1.0.0"}'
    assert (ocidir.path / BLOBDIR).is_dir()


def test_canonical_json_sorted_compact():
    assert canonical_json({"b": 1, "a": [True, None, "x"]}) == b'{"a":[true,null,"x"],"b":1}'


def test_canonical_json_minimal_escaping():
    assert canonical_json('q"b\\\n\u00e9') == '"q\\"b\\\\\n\u00e9"'.encode("utf-8")


def test_canonical_json_rejects_float():
    with pytest.raises(ValueError):
        canonical_json({"a": 1.5})


def test_blob_writer_names_blob_by_digest(ocidir):
    w = BlobWriter(ocidir.path)
    w.write(b"hello ")
    w.write(b"world")
    blob = w.complete()
    assert blob.size == 11
    content = (ocidir.path / BLOBDIR / blob.sha256).read_bytes()
    assert content == b"hello world"
    assert hashlib.sha256(content).hexdigest() == blob.sha256
    assert blob.digest_id() == f"sha256:{blob.sha256}"
    assert blob.descriptor() == {"digest": f"sha256:{blob.sha256}", "size": 11}
    assert sorted(p.name for p in (ocidir.path / BLOBDIR).iterdir()) == [blob.sha256]


def test_blob_writer_abort_leaves_nothing(ocidir):
    with BlobWriter(ocidir.path) as w:
        w.write(b"discard")
    assert list((ocidir.path / BLOBDIR).iterdir()) == []


def test_raw_layer_is_gzip(ocidir):
    w = ocidir.create_raw_layer(1)
    payload = b"some data " * 1000
    w.write(payload)
    layer = w.complete()
    with ocidir.read_blob(layer.descriptor()) as f:
        compressed = f.read()
    assert gzip.decompress(compressed) == payload
    assert layer.blob.size == len(compressed)
    assert layer.descriptor() == layer.blob.descriptor()


def test_tar_layer_roundtrip(ocidir):
    builder = ocidir.create_layer()
    data = b"file content"
    info = tarfile.TarInfo("etc/hello")
    info.size = len(data)
    builder.addfile(info, io.BytesIO(data))
    layer = builder.complete()
    with ocidir.read_blob(layer.descriptor()) as f:
        raw = gzip.decompress(f.read())
    with tarfile.open(fileobj=io.BytesIO(raw)) as tar:
        assert tar.getnames() == ["etc/hello"]
        assert tar.extractfile("etc/hello").read() == data


def test_push_layer_records_history_and_annotations(ocidir):
    w = ocidir.create_raw_layer()
    w.write(b"x")
    layer = w.complete()
    manifest = new_empty_manifest()
    config = _config()
    ocidir.push_layer(manifest, config, layer, "pkg", {"ostree.components": "a,b"})
    assert manifest["layers"] == [
        {
            "mediaType": MEDIA_TYPE_IMAGE_LAYER_GZIP,
            "digest": layer.blob.digest_id(),
            "size": layer.blob.size,
            "annotations": {"ostree.components": "a,b"},
        }
    ]
    assert config["rootfs"]["diff_ids"] == [f"sha256:{layer.uncompressed_sha256}"]
    (history,) = config["history"]
    assert history["created_by"] == "pkg"
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ", history["created"])


def test_new_empty_manifest_placeholder():
    m = new_empty_manifest()
    assert m["schemaVersion"] == 2
    assert m["layers"] == []
    assert m["config"]["size"] == 7023
    assert m["config"]["mediaType"] == MEDIA_TYPE_IMAGE_CONFIG
    assert (
        m["config"]["digest"]
        == "sha256:a5b2b2c507a0944348e0303114d8d93aaaa081732b86451d9bce1f432a537bc7"
    )


def test_read_blob_strips_directories(ocidir):
    blob = Blob(**{"sha256": "", "size": 0})
    w = BlobWriter(ocidir.path)
    w.write(b"abc")
    blob = w.complete()
    with ocidir.read_blob({"digest": f"sha256:x/../{blob.sha256}"}) as f:
        assert f.read() == b"abc"


def test_read_manifest_without_index(ocidir):
    with pytest.raises(OciDirError, match="index.json"):
        ocidir.read_manifest()


def test_read_manifest_empty_index(ocidir):
    (ocidir.path / "index.json").write_text('{"schemaVersion":2,"manifests":[]}')
    with pytest.raises(OciDirError, match="No manifests found"):
        ocidir.read_manifest()


def test_insert_manifest_tag_annotation(ocidir):
    manifest = new_empty_manifest()
    desc = ocidir.insert_manifest(manifest, "v1", PLATFORM)
    assert desc["annotations"] == {OCI_TAG_ANNOTATION: "v1"}
    assert desc["platform"] == PLATFORM
    index = json.loads((ocidir.path / "index.json").read_text())
    assert index["schemaVersion"] == 2
    assert index["manifests"] == [desc]
    read, read_desc = ocidir.read_manifest_and_descriptor()
    assert read == manifest
    assert read_desc == desc


def test_read_json_blob_invalid_json(ocidir):
    w = BlobWriter(ocidir.path)
    w.write(b"{not json")
    blob = w.complete()
    with pytest.raises(ValueError, match="Parsing object"):
        ocidir.read_json_blob(blob.descriptor())


def test_clone_to_copies_blobs(ocidir, tmp_path):
    w = BlobWriter(ocidir.path)
    w.write(b"cloned")
    blob = w.complete()
    cloned = ocidir.clone_to(tmp_path / "copy")
    assert (cloned.path / "oci-layout").exists()
    with cloned.read_blob(blob.descriptor()) as f:
        assert f.read() == b"cloned"
    with pytest.raises(FileExistsError):
        ocidir.clone_to(tmp_path / "copy")


def test_open_requires_directory(tmp_path):
    with pytest.raises(NotADirectoryError):
        OciDir.open(tmp_path / "missing")
    opened = OciDir.open(tmp_path)
    assert opened.path == tmp_path