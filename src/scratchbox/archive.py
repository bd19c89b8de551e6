"""Tar archives for injecting files into running containers.

Archives are produced incrementally: ``ArchiveStream`` yields byte chunks as
each entry is written, so a tree is never held in memory as a whole archive.
The stream is iterable from sync code and from async code (each chunk is
produced in a worker thread).
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import tarfile
import time
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from scratchbox.errors import ArchiveBuildError

if TYPE_CHECKING:
    from scratchbox.runtimes.base import ContainerRuntime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveEntry:
    """One member of an archive.

    header_only entries (directories, symlinks, devices, fifos) carry no
    content; regular files are read from ``source`` when streamed.
    """

    path: str
    source: Path
    header_only: bool


class _ChunkSink(io.RawIOBase):
    """Write target that hands accumulated bytes back to the generator."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        self._buffer += data
        return len(data)

    def drain(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


class ArchiveStream:
    """Single-use stream of tar bytes."""

    def __init__(self, chunks: Iterator[bytes]) -> None:
        self._chunks = chunks

    def __iter__(self) -> Iterator[bytes]:
        return self._chunks

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await asyncio.to_thread(next, self._chunks, None)
            if chunk is None:
                return
            yield chunk

    def read_all(self) -> bytes:
        """Materialize the whole archive (tests and small payloads)."""
        return b"".join(self._chunks)


def _raise(error: OSError) -> None:
    raise error


def _walk(source: Path) -> Iterator[ArchiveEntry]:
    if not source.is_dir() or source.is_symlink():
        yield ArchiveEntry(
            path=source.name,
            source=source,
            header_only=not source.is_file() or source.is_symlink(),
        )
        return

    for root, dirnames, filenames in os.walk(source, onerror=_raise, followlinks=False):
        dirnames.sort()
        root_path = Path(root)
        for name in dirnames:
            path = root_path / name
            yield ArchiveEntry(
                path=path.relative_to(source).as_posix(), source=path, header_only=True
            )
        for name in sorted(filenames):
            path = root_path / name
            yield ArchiveEntry(
                path=path.relative_to(source).as_posix(),
                source=path,
                header_only=path.is_symlink() or not path.is_file(),
            )


class ArchiveTransfer:
    """Builds tar streams from files, trees and in-memory content."""

    def entries(self, source_path: str | os.PathLike[str]) -> list[ArchiveEntry]:
        """Ordered entries that ``build`` would write, paths relative to the root."""
        source = self._check_source(source_path)
        try:
            return list(_walk(source))
        except OSError as e:
            raise ArchiveBuildError(f"Failed to walk {source}", str(e)) from e

    def build(
        self, source_path: str | os.PathLike[str], compress: bool = False
    ) -> ArchiveStream:
        """Stream a tar archive of a file or directory tree.

        Raises:
            ArchiveBuildError: Immediately when the source does not exist;
                while streaming when a file cannot be read.
        """
        source = self._check_source(source_path)
        return ArchiveStream(self._generate(source, compress))

    def from_bytes(
        self, name: str, data: bytes, mode: int = 0o644, compress: bool = False
    ) -> ArchiveStream:
        """Stream a one-file archive built from in-memory content."""

        def generate() -> Iterator[bytes]:
            sink = _ChunkSink()
            with tarfile.open(fileobj=sink, mode="w|gz" if compress else "w|") as tar:
                info = tarfile.TarInfo(name=name)
                info.size = len(data)
                info.mode = mode
                info.mtime = int(time.time())
                tar.addfile(info, io.BytesIO(data))
            yield sink.drain()

        return ArchiveStream(generate())

    async def copy_into(
        self,
        runtime: ContainerRuntime,
        container_id: str,
        source_path: str | os.PathLike[str],
        dest_path: str,
        compress: bool = False,
    ) -> None:
        """Build an archive of ``source_path`` and extract it at ``dest_path``."""
        stream = self.build(source_path, compress=compress)
        await runtime.copy_archive_into(container_id, dest_path, stream)

    @staticmethod
    def _check_source(source_path: str | os.PathLike[str]) -> Path:
        source = Path(source_path)
        if not source.exists() and not source.is_symlink():
            raise ArchiveBuildError(f"Archive source does not exist: {source}")
        return source

    @staticmethod
    def _generate(source: Path, compress: bool) -> Iterator[bytes]:
        sink = _ChunkSink()
        try:
            with tarfile.open(fileobj=sink, mode="w|gz" if compress else "w|") as tar:
                for entry in _walk(source):
                    info = tar.gettarinfo(str(entry.source), arcname=entry.path)
                    if info is None:
                        # sockets have no tar representation
                        logger.debug("Skipping unsupported file type: %s", entry.source)
                        continue
                    if entry.header_only or not info.isreg():
                        tar.addfile(info)
                    else:
                        with entry.source.open("rb") as f:
                            tar.addfile(info, f)
                    chunk = sink.drain()
                    if chunk:
                        yield chunk
        except OSError as e:
            raise ArchiveBuildError(f"Failed to archive {source}", str(e)) from e

        tail = sink.drain()
        if tail:
            yield tail
