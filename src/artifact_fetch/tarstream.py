"""Forward-only tar reading with cooperative early termination."""

from __future__ import annotations

import enum
import io
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Iterable, Iterator, Optional

from .errors import ArchiveError

__all__ = [
    "ScanResult",
    "ScanSignal",
    "TarEntry",
    "TarStreamReader",
]

_COPY_CHUNK = 64 * 1024


class ScanSignal(enum.Enum):
    """Returned by a visitor to tell the reader whether to keep going."""

    CONTINUE = "continue"
    STOP = "stop"


class ScanResult(enum.Enum):
    """How a scan ended. ``STOPPED`` is a deliberate, successful abort."""

    STOPPED = "stopped"
    EXHAUSTED = "exhausted"


class _ChunkReader(io.RawIOBase):
    """Adapts an iterator of byte chunks to a readable file object."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = iter(chunks)
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        n = min(len(buffer), len(self._pending))
        buffer[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n


@dataclass
class TarEntry:
    """
    A regular file at the current stream position.

    The content handle is only valid until the visitor returns; afterwards
    the reader moves past whatever was left unread.
    """

    path: str
    size: int
    fileobj: IO[bytes]

    def iter_chunks(self) -> Iterator[bytes]:
        for chunk in iter(lambda: self.fileobj.read(_COPY_CHUNK), b""):
            yield chunk

    def read(self) -> bytes:
        return self.fileobj.read()

    def extract_to(self, dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(dest, "wb") as fh:
                for chunk in self.iter_chunks():
                    fh.write(chunk)
        except Exception:
            dest.unlink(missing_ok=True)
            raise
        return dest


class TarStreamReader:
    """
    Walks a tar stream entry by entry without seeking.

    Compressed streams (gzip, bzip2, xz) are detected from their magic
    bytes. Non-file members such as directories and links are not shown to
    the visitor.
    """

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._reader = io.BufferedReader(_ChunkReader(chunks))

    def scan(self, visitor: Callable[[TarEntry], ScanSignal]) -> ScanResult:
        try:
            return self._scan(visitor)
        except (tarfile.TarError, EOFError) as exc:
            raise ArchiveError(f"Unreadable tar stream: {exc}") from exc

    def _scan(self, visitor: Callable[[TarEntry], ScanSignal]) -> ScanResult:
        with tarfile.open(fileobj=self._reader, mode="r|*") as tar:
            for member in tar:
                if not member.isfile():
                    continue
                fileobj: Optional[IO[bytes]] = tar.extractfile(member)
                if fileobj is None:
                    continue
                entry = TarEntry(path=member.name, size=member.size, fileobj=fileobj)
                if visitor(entry) is ScanSignal.STOP:
                    return ScanResult.STOPPED
        return ScanResult.EXHAUSTED
