# ocibridge

A library for working with container images that wrap an ostree commit:
parsing image references, reading and writing OCI image directories,
copying images with `skopeo`, and interpreting the metadata and layer
layout of encapsulated images. It has no third-party dependencies.

## Installation

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

`ocibridge.skopeo.copy` runs the `skopeo` program, which must be on `PATH`.

## Image references

`ocibridge.reference` parses and formats reference strings:

```python
from ocibridge.reference import ImageReference, OstreeImageReference

ref = ImageReference.parse("containers-storage:localhost/someimage:blah")
print(ref.name)        # localhost/someimage:blah
print(ref)             # containers-storage:localhost/someimage:blah

oref = OstreeImageReference.parse(
    "ostree-remote-registry:myremote:quay.io/exampleos/blah"
)
print(oref.imgref.name)  # quay.io/exampleos/blah
print(oref)              # ostree-remote-image:myremote:docker://quay.io/exampleos/blah
```

- `Transport` covers `registry` (also accepted as `docker`), `oci`,
  `oci-archive`, `containers-storage` and `dir`; `serializable_name()`
  returns a name `Transport.parse` accepts back. A registry reference is
  printed as `docker://...`.
- `SignatureSource` has a `kind` (`SignatureSourceKind`) and, for
  `ostree-remote-image:<remote>`, a `remote`. The other kinds are
  `ostree-image-signed` and `ostree-unverified-image`.
- `OstreeImageReference.parse` also accepts the shorthands
  `ostree-unverified-registry:<name>` and
  `ostree-remote-registry:<remote>:<name>`. An unverified registry reference
  is printed in the shorthand form.

Invalid strings raise `ValueError`. All reference classes are frozen
dataclasses and can be compared and hashed.

## OCI directories

`ocibridge.ocidir.OciDir` creates and reads OCI image layouts on disk.
Manifests, configs and descriptors are plain dictionaries.

```python
from ocibridge.ocidir import OciDir, new_empty_manifest

oci = OciDir.create("/var/tmp/myimage")
writer = oci.create_raw_layer(None)
writer.write(b"pretend this is a tarball")
layer = writer.complete()

manifest = new_empty_manifest()
config = {}
oci.push_layer(manifest, config, layer, "root", None)
manifest["config"] = oci.write_config(config)
oci.replace_with_single_manifest(manifest, {})

assert oci.read_manifest() == manifest
```

- Blobs are stored under `blobs/sha256/`, named by their SHA-256.
  `BlobWriter` writes a blob; `RawLayerWriter` gzip-compresses a layer and
  also records the digest of the uncompressed data (`Layer.uncompressed_sha256`).
  Both can be used as context managers, which discard unfinished output.
- `create_layer` returns a tar stream writer (with `add`, `addfile` and
  `complete`) backed by a layer blob.
- `push_layer` appends a layer descriptor to the manifest and its diff ID
  and a history entry to the config.
- JSON blobs and `index.json` are written in canonical form (`canonical_json`:
  sorted keys, no whitespace; floats are refused).
- `insert_manifest` adds a manifest to the index, optionally tagged;
  `find_manifest_with_tag` looks one up; `read_manifest` and
  `read_manifest_and_descriptor` require exactly one manifest and raise
  `OciDirError` otherwise. When no platform is given, the current machine's
  architecture and OS are recorded.
- `clone_to` creates a new OCI directory holding copies of all blobs.

## skopeo and the container policy

- `ocibridge.skopeo.copy(src, dest, authfile)` is a coroutine running
  `skopeo copy --digestfile ...` and returning the manifest digest; it raises
  `SkopeoError` if skopeo cannot be started or fails.
- `ContainerPolicy.from_json` reads the default entries of a
  `policy.json`; `is_default_insecure()` is true when the default is exactly
  one `insecureAcceptAnything` entry.
  `container_policy_is_default_insecure(path)` does both for a file
  (by default `/etc/containers/policy.json`).

## Environment detection

`ocibridge.environment` offers `running_in_container`,
`is_bare_split_xattrs`, `is_ostree_container` and `require_ostree_container`
(which raises `NotInContainerError`). Each takes optional arguments for the
environment mapping and the marker and repository config paths, so that it
can be checked against other locations than the running system's.

## Image metadata

- `ocibridge.manifest`: `ManifestDiff.from_manifests(src, dest)` compares the
  layers of two manifests; `render()` returns, and `print()` prints, the
  totals and sizes. `format_size` formats byte counts in SI units;
  `labels_of` and `version_for_config` read an image config's labels.
- `ocibridge.layout`: `parse_manifest_layout` splits a manifest into the
  ostree commit layer, its chunk layers and derived layers, using the
  `ostree.final-diffid` label (`ExportLayout.V1`); the legacy `ostree.diffid`
  layout is rejected. `timestamp_of_manifest_or_config`,
  `manifest_data_from_commitmeta` and `image_config_from_commitmeta` read
  creation times and metadata stored as commit metadata mappings. Problems
  raise `LayoutError`.
- `ocibridge.state`: `LayeredImageState`, `CachedImageUpdate`,
  `ManifestLayerState` and `PreparedImport` describe pulled and pending
  images. `PreparedImport.layers_to_fetch()` lists layers not yet present
  and `format_layer_status()` summarises them. `parse_cached_update` reads a
  pending update from detached commit metadata. `ImportProgress` and
  `LayerProgress` are progress records.
- `ocibridge.fetch`: `ProgressReader` counts bytes read and reports the
  running total to a callback; `new_decompressor` unwraps gzip or plain
  layers; `join_fetch` awaits a worker and a driver together and raises the
  meaningful error (`FetchError` when both fail for unrelated reasons).
- `ocibridge.verify`: `compare_trees` checks a tree of `TreeEntry` nodes
  against another and records results in a `CompareState`, whose `report()`
  prints the outcome. `filtered_content_warning` and `missing_images_error`
  build the corresponding messages.

## What it does not do

The package has no ostree repository storage of its own. It does not pull
images from registries, import layers into a repository, build images from
commits, or deploy them; the metadata and tree types above describe such
images but are filled in by the caller. There is no command-line program.