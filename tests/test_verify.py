import pytest

from ocibridge.reference import ImageReference, Transport
from ocibridge.verify import (
    DIRECTORY,
    REGULAR,
    CompareState,
    FileInfo,
    MissingImagesError,
    TreeEntry,
    compare_file_info,
    compare_trees,
    filtered_content_warning,
    missing_images_error,
)


def _file(checksum, size=10, mode=0o644):
    return TreeEntry(FileInfo(REGULAR, size=size, mode=mode), checksum)


def _dir(checksum, **children):
    return TreeEntry(FileInfo(DIRECTORY, mode=0o755), checksum, dict(children))


def _inodes(mapping):
    return lambda checksum: mapping[checksum]


def test_compare_file_info():
    a = FileInfo(REGULAR, size=3, uid=0, gid=0, mode=0o644)
    assert compare_file_info(a, FileInfo(REGULAR, size=3, uid=0, gid=0, mode=0o644))
    assert not compare_file_info(a, FileInfo(DIRECTORY, size=3, mode=0o644))
    assert not compare_file_info(a, FileInfo(REGULAR, size=4, mode=0o644))
    assert not compare_file_info(a, FileInfo(REGULAR, size=3, uid=1000, mode=0o644))
    assert not compare_file_info(a, FileInfo(REGULAR, size=3, mode=0o600))


def test_identical_files_are_verified():
    tree = _dir("root1", a=_file("c1"), b=_file("c2"))
    state = CompareState()
    compare_trees("/", tree, tree, True, set(), state, _inodes({}))
    assert state.verified == {"/a", "/b"}
    assert state.is_ok()


def test_missing_entry_is_unknown(capsys):
    target = _dir("r1", a=_file("c1"))
    expected = _dir("r2", a=_file("c1"), gone=_file("c9"))
    state = CompareState()
    compare_trees("/", target, expected, True, set(), state, _inodes({}))
    assert state.unknown_corrupted == {"/gone"}
    assert state.verified == {"/a"}
    assert not state.is_ok()
    assert "Missing /gone" in capsys.readouterr().err


def test_exact_mismatch_classified_by_inode():
    target = _dir("r1", a=_file("t1"), b=_file("t2"))
    expected = _dir("r2", a=_file("e1"), b=_file("e2"))
    inodes = _inodes({"t1": 100, "e1": 101, "t2": 200, "e2": 201})
    state = CompareState()
    compare_trees("/", target, expected, True, {100}, state, inodes)
    assert state.inode_corrupted == {"/a"}
    assert state.unknown_corrupted == {"/b"}
    assert state.verified == set()


def test_loose_comparison_uses_file_info():
    target = _dir("r1", same=_file("t1"), resized=_file("t2", size=11))
    expected = _dir("r2", same=_file("e1"), resized=_file("e2"))
    state = CompareState()
    compare_trees("/", target, expected, False, set(), state, _inodes({"t2": 1, "e2": 2}))
    assert state.verified == {"/same"}
    assert state.unknown_corrupted == {"/resized"}


def test_unchanged_directory_is_skipped():
    sub = _dir("same", x=_file("c1"))
    target = _dir("r1", usr=sub)
    expected = _dir("r2", usr=_dir("same", x=_file("other")))
    state = CompareState()
    compare_trees("/", target, expected, True, set(), state, _inodes({}))
    assert state.verified == set()
    assert state.is_ok()


def test_changed_directory_is_descended():
    target = _dir("r1", usr=_dir("d1", bin=_file("c1")))
    expected = _dir("r2", usr=_dir("d2", bin=_file("c1")))
    state = CompareState()
    compare_trees("/", target, expected, True, set(), state, _inodes({}))
    assert state.verified == {"/usr/bin"}


def test_report_ok(capsys):
    state = CompareState(verified={"/a", "/b"})
    assert state.report("docker://quay.io/exampleos/blah") is True
    out = capsys.readouterr().out
    assert out == "OK image docker://quay.io/exampleos/blah (verified=2)\n\n"


def test_report_failure_verbose(capsys):
    state = CompareState(verified={"/ok"}, inode_corrupted={"/a"}, unknown_corrupted={"/b"})
    assert state.report("oci:somedir", verbose=True) is False
    err = capsys.readouterr().err
    assert "warning: Found corrupted merge commit" in err
    assert "  inode clashes: 1" in err
    assert "  inode: /a" in err
    assert "  other: /b" in err


def test_report_failure_quiet_omits_paths(capsys):
    state = CompareState(unknown_corrupted={"/b"})
    assert state.report("oci:somedir") is False
    err = capsys.readouterr().err
    assert "Mismatches:" not in err
    assert "/b" not in err


def test_filtered_content_warning():
    assert filtered_content_warning({}) is None
    assert (
        filtered_content_warning({"sha256:a": {}})
        == "Image contains non-ostree compatible file paths:"
    )
    msg = filtered_content_warning({"sha256:a": {"/x": 2}, "sha256:b": {"/x": 3, "/y": 1}})
    assert msg == "Image contains non-ostree compatible file paths: /x: 5 /y: 1"


def test_missing_images_error():
    assert missing_images_error([]) is None
    err = missing_images_error(
        [
            ImageReference(Transport.REGISTRY, "quay.io/exampleos/blah"),
            ImageReference(Transport.OCI_DIR, "somedir"),
        ]
    )
    assert isinstance(err, MissingImagesError)
    assert str(err) == "Missing images: docker://quay.io/exampleos/blahoci:somedir"
    with pytest.raises(MissingImagesError):
        raise err