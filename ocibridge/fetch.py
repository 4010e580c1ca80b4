"""Helpers for fetching layers: progress tracking, decompression and error joining."""

from __future__ import annotations

import asyncio
import gzip
import io
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, BinaryIO, TypeVar

from .ocidir import MEDIA_TYPE_IMAGE_LAYER, MEDIA_TYPE_IMAGE_LAYER_GZIP

T = TypeVar("T")


class FetchError(RuntimeError):
    """Raised when both the fetching side and the proxy side of a fetch fail."""


@dataclass(frozen=True)
class Import:
    """The result of an import operation."""

    ostree_commit: str
    image_digest: str
    deprecated_warning: str | None = None


class ProgressReader(io.RawIOBase):
    """A reader wrapper that counts the bytes read and reports the running total."""

    def __init__(
        self, reader: BinaryIO, on_progress: Callable[[int], Any] | None = None
    ) -> None:
        super().__init__()
        self._reader = reader
        self._on_progress = on_progress
        self.fetched = 0

    def readable(self) -> bool:
        return True

    def _advance(self, n: int) -> None:
        if not n:
            return
        self.fetched += n
        if self._on_progress is not None:
            self._on_progress(self.fetched)

    def readinto(self, buffer) -> int:
        data = self._reader.read(len(buffer))
        n = len(data)
        buffer[:n] = data
        self._advance(n)
        return n

    def read(self, size: int | None = -1) -> bytes:
        data = self._reader.read(-1 if size is None else size)
        self._advance(len(data))
        return data


def _root_cause(exc: BaseException) -> BaseException:
    while True:
        nxt = exc.__cause__ or exc.__context__
        if nxt is None:
            return exc
        exc = nxt


def _is_broken_pipe(exc: BaseException) -> bool:
    root = _root_cause(exc)
    return isinstance(root, BrokenPipeError) or str(root).endswith("broken pipe")


async def join_fetch(worker: Awaitable[T], driver: Awaitable[Any]) -> T:
    """Await a worker and the proxy driver together, reporting the meaningful error.

    If both fail and the driver's failure is a broken pipe, only the worker's
    error is raised, since the pipe broke because the worker stopped reading.
    """
    worker_result, driver_result = await asyncio.gather(
        worker, driver, return_exceptions=True
    )
    for result in (worker_result, driver_result):
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result
    worker_failed = isinstance(worker_result, Exception)
    driver_failed = isinstance(driver_result, Exception)
    if worker_failed and driver_failed:
        if _is_broken_pipe(driver_result):
            raise worker_result
        text = str(_root_cause(driver_result))
        raise FetchError(f"proxy failure: {text} and client error") from worker_result
    if driver_failed:
        raise driver_result
    if worker_failed:
        raise worker_result
    return worker_result


def new_decompressor(media_type: str, src: BinaryIO) -> BinaryIO:
    """Return a reader yielding the uncompressed content of a layer of ``media_type``."""
    if media_type == MEDIA_TYPE_IMAGE_LAYER_GZIP:
        return gzip.GzipFile(fileobj=src, mode="rb")
    if media_type == MEDIA_TYPE_IMAGE_LAYER:
        return src
    raise ValueError(f"Unhandled layer type: {media_type}")