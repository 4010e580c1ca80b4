"""Verification of a merged image commit tree against the layers it was built from."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from .reference import ImageReference

DIRECTORY = "directory"
"""File type name of a directory entry."""

REGULAR = "regular"
"""File type name of a regular file entry."""

SYMLINK = "symlink"
"""File type name of a symbolic link entry."""


class MissingImagesError(LookupError):
    """Raised when some of the images asked to be removed were not present."""


@dataclass(frozen=True)
class FileInfo:
    """The file metadata that takes part in a loose comparison."""

    file_type: str
    size: int = 0
    uid: int = 0
    gid: int = 0
    mode: int = 0


@dataclass
class TreeEntry:
    """A node of a commit tree.

    For files ``checksum`` is the content checksum; for directories it is the
    checksum of the directory contents, and ``children`` maps names to entries.
    """

    info: FileInfo
    checksum: str = ""
    children: dict[str, TreeEntry] = field(default_factory=dict)

    @property
    def is_dir(self) -> bool:
        return self.info.file_type == DIRECTORY


@dataclass
class CompareState:
    """Paths found verified or corrupted while comparing trees."""

    verified: set[str] = field(default_factory=set)
    inode_corrupted: set[str] = field(default_factory=set)
    unknown_corrupted: set[str] = field(default_factory=set)

    def is_ok(self) -> bool:
        """True if no corrupted path was found."""
        return not self.inode_corrupted and not self.unknown_corrupted

    def report(self, imgref: object, verbose: bool = False) -> bool:
        """Print the outcome of the verification of ``imgref`` and return :meth:`is_ok`."""
        n_verified = len(self.verified)
        if self.is_ok():
            print(f"OK image {imgref} (verified={n_verified})")
            print()
            return True
        err = sys.stderr
        print("warning: Found corrupted merge commit", file=err)
        print(f"  inode clashes: {len(self.inode_corrupted)}", file=err)
        print(f"  unknown:       {len(self.unknown_corrupted)}", file=err)
        print(f"  ok:            {n_verified}", file=err)
        if verbose:
            print("Mismatches:", file=err)
            for path in sorted(self.inode_corrupted):
                print(f"  inode: {path}", file=err)
            for path in sorted(self.unknown_corrupted):
                print(f"  other: {path}", file=err)
        print(file=err)
        return False


def compare_file_info(src: FileInfo, target: FileInfo) -> bool:
    """Compare type, size, owner and mode of two files."""
    return (
        src.file_type == target.file_type
        and src.size == target.size
        and src.uid == target.uid
        and src.gid == target.gid
        and src.mode == target.mode
    )


def compare_trees(
    root: str,
    target: TreeEntry,
    expected: TreeEntry,
    exact: bool,
    colliding_inodes: Iterable[int],
    state: CompareState,
    inode_of: Callable[[str], int],
) -> None:
    """Check every entry of ``expected`` against ``target``, recording results in ``state``.

    ``root`` is the path prefix (ending in ``/``) of the directories compared;
    ``inode_of`` maps a file checksum to the inode of its stored object.
    """
    colliding = colliding_inodes if isinstance(colliding_inodes, (set, frozenset)) else set(
        colliding_inodes
    )
    for name, expected_child in expected.children.items():
        path = f"{root}{name}"
        target_child = target.children.get(name)
        if target_child is None:
            print(f"Missing {path}", file=sys.stderr)
            state.unknown_corrupted.add(path)
            continue
        if expected_child.is_dir:
            if expected_child.checksum != target_child.checksum:
                # The traversal descends with the two sides exchanged.
                compare_trees(
                    f"{path}/",
                    expected_child,
                    target_child,
                    exact,
                    colliding,
                    state,
                    inode_of,
                )
            continue
        if exact:
            matches = expected_child.checksum == target_child.checksum
        else:
            matches = compare_file_info(target_child.info, expected_child.info)
        if matches:
            state.verified.add(path)
            continue
        from_inode = inode_of(expected_child.checksum)
        to_inode = inode_of(target_child.checksum)
        if from_inode in colliding or to_inode in colliding:
            state.inode_corrupted.add(path)
        else:
            state.unknown_corrupted.add(path)


def filtered_content_warning(filtered: Mapping[str, Mapping[str, int]]) -> str | None:
    """Summarize per-layer counts of filtered paths, or None if nothing was filtered."""
    if not filtered:
        return None
    totals: dict[str, int] = {}
    for paths in filtered.values():
        for path, count in paths.items():
            totals[path] = totals.get(path, 0) + count
    parts = ["Image contains non-ostree compatible file paths:"]
    parts.extend(f" {path}: {count}" for path, count in totals.items())
    return "".join(parts)


def missing_images_error(missing: Iterable[ImageReference]) -> MissingImagesError | None:
    """Return the error to raise for images that were not found, or None if none were."""
    names = [str(img) for img in missing]
    if not names:
        return None
    return MissingImagesError(f"Missing images: {''.join(names)}")