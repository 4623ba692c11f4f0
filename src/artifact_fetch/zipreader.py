"""Lazy zip archive reading on top of a :class:`RangeByteSource`.

Only the end-of-central-directory record and the central directory are
fetched up front. Entry data is fetched on demand, one ranged read per
entry, so pulling a small file out of a large archive costs a handful of
small requests.
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .errors import ArchiveError
from .ranged import RangeByteSource

__all__ = [
    "ZipArchiveReader",
    "ZipEntry",
]

# Record layouts, see APPNOTE.TXT sections 4.3.7, 4.3.12, 4.3.14-4.3.16.
_EOCD = struct.Struct("<4s4H2LH")
_EOCD_SIG = b"PK\x05\x06"
_ZIP64_LOCATOR = struct.Struct("<4sLQL")
_ZIP64_LOCATOR_SIG = b"PK\x06\x07"
_ZIP64_EOCD = struct.Struct("<4sQ2H2L4Q")
_ZIP64_EOCD_SIG = b"PK\x06\x06"
_CENTRAL = struct.Struct("<4s4B4HL2L5H2L")
_CENTRAL_SIG = b"PK\x01\x02"
_LOCAL = struct.Struct("<4s2B4HL2L2H")
_LOCAL_SIG = b"PK\x03\x04"

_MAX_COMMENT = 0xFFFF
_ZIP64_EXTRA_ID = 0x0001
_FLAG_ENCRYPTED = 0x0001
_FLAG_UTF8 = 0x0800

STORED = 0
DEFLATED = 8


@dataclass(frozen=True)
class ZipEntry:
    """A file or directory record from the central directory."""

    path: str
    size: int
    compressed_size: int
    method: int
    crc: int
    header_offset: int
    flags: int = 0
    source: RangeByteSource | None = field(default=None, repr=False, compare=False)

    @property
    def is_dir(self) -> bool:
        return self.path.endswith("/")

    def stream(self) -> Iterator[bytes]:
        """Yield the decompressed content of this entry."""
        if self.source is None:
            raise ArchiveError(f"Entry {self.path!r} is not bound to a byte source")
        if self.flags & _FLAG_ENCRYPTED:
            raise ArchiveError(f"Entry {self.path!r} is encrypted")
        if self.method not in (STORED, DEFLATED):
            raise ArchiveError(
                f"Entry {self.path!r} uses unsupported compression method {self.method}"
            )

        header = self.source.read(self.header_offset, _LOCAL.size)
        if len(header) != _LOCAL.size or header[:4] != _LOCAL_SIG:
            raise ArchiveError(f"Bad local header for {self.path!r}")
        fields = _LOCAL.unpack(header)
        data_offset = self.header_offset + _LOCAL.size + fields[10] + fields[11]

        decompressor = (
            zlib.decompressobj(-zlib.MAX_WBITS) if self.method == DEFLATED else None
        )
        crc = 0
        produced = 0
        chunks = self.source.stream(data_offset, self.compressed_size)
        try:
            for raw in chunks:
                try:
                    data = decompressor.decompress(raw) if decompressor else raw
                except zlib.error as exc:
                    raise ArchiveError(f"Corrupt deflate data for {self.path!r}: {exc}") from exc
                if data:
                    crc = zlib.crc32(data, crc)
                    produced += len(data)
                    yield data
            if decompressor:
                try:
                    tail = decompressor.flush()
                except zlib.error as exc:
                    raise ArchiveError(f"Corrupt deflate data for {self.path!r}: {exc}") from exc
                if tail:
                    crc = zlib.crc32(tail, crc)
                    produced += len(tail)
                    yield tail
        finally:
            chunks.close()

        if produced != self.size or crc != self.crc:
            raise ArchiveError(f"Corrupt data for {self.path!r} (size or CRC mismatch)")

    def extract_to(self, dest: Path) -> Path:
        """Write the entry's content to *dest*, creating parent directories."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(dest, "wb") as fh:
                for chunk in self.stream():
                    fh.write(chunk)
        except Exception:
            # A partially written or corrupt entry is never left behind.
            dest.unlink(missing_ok=True)
            raise
        return dest


class ZipArchiveReader:
    """
    Central-directory view of a remote zip archive.

    The parsed entry tuple is read-only, so entries may be streamed
    concurrently.
    """

    def __init__(self, source: RangeByteSource, entries: tuple[ZipEntry, ...]) -> None:
        self.source = source
        self.entries = entries

    @classmethod
    def open(cls, source: RangeByteSource) -> ZipArchiveReader:
        total = source.size()
        tail_len = min(total, _EOCD.size + _MAX_COMMENT + _ZIP64_LOCATOR.size)
        tail_start = total - tail_len
        tail = source.read(tail_start, tail_len)

        pos = tail.rfind(_EOCD_SIG)
        if pos < 0 or len(tail) - pos < _EOCD.size:
            raise ArchiveError("End of central directory record not found")
        (_, _, _, _, count, cd_size, cd_offset, _) = _EOCD.unpack_from(tail, pos)

        if count == 0xFFFF or cd_size == 0xFFFFFFFF or cd_offset == 0xFFFFFFFF:
            count, cd_size, cd_offset = cls._read_zip64_end(source, tail, pos)

        directory = source.read(cd_offset, cd_size) if cd_size else b""
        if len(directory) != cd_size:
            raise ArchiveError("Truncated central directory")
        try:
            entries = tuple(cls._parse_directory(directory, count, source))
        except (struct.error, UnicodeDecodeError) as exc:
            raise ArchiveError(f"Malformed central directory: {exc}") from exc
        return cls(source, entries)

    @staticmethod
    def _read_zip64_end(
        source: RangeByteSource, tail: bytes, eocd_pos: int
    ) -> tuple[int, int, int]:
        loc_pos = eocd_pos - _ZIP64_LOCATOR.size
        if loc_pos < 0 or tail[loc_pos:loc_pos + 4] != _ZIP64_LOCATOR_SIG:
            raise ArchiveError("ZIP64 end of central directory locator not found")
        _, _, record_offset, _ = _ZIP64_LOCATOR.unpack_from(tail, loc_pos)
        record = source.read(record_offset, _ZIP64_EOCD.size)
        if len(record) != _ZIP64_EOCD.size or record[:4] != _ZIP64_EOCD_SIG:
            raise ArchiveError("Bad ZIP64 end of central directory record")
        fields = _ZIP64_EOCD.unpack(record)
        return fields[7], fields[8], fields[9]

    @staticmethod
    def _parse_directory(
        data: bytes, count: int, source: RangeByteSource
    ) -> Iterator[ZipEntry]:
        pos = 0
        for _ in range(count):
            if data[pos:pos + 4] != _CENTRAL_SIG:
                raise ArchiveError(f"Bad central directory header at offset {pos}")
            fields = _CENTRAL.unpack_from(data, pos)
            flags, method = fields[5], fields[6]
            crc, compressed_size, size = fields[9], fields[10], fields[11]
            name_len, extra_len, comment_len = fields[12], fields[13], fields[14]
            header_offset = fields[18]
            pos += _CENTRAL.size

            raw_name = data[pos:pos + name_len]
            name = raw_name.decode("utf-8" if flags & _FLAG_UTF8 else "cp437")
            extra = data[pos + name_len:pos + name_len + extra_len]
            pos += name_len + extra_len + comment_len

            if 0xFFFFFFFF in (size, compressed_size, header_offset):
                size, compressed_size, header_offset = _apply_zip64_extra(
                    extra, size, compressed_size, header_offset
                )

            yield ZipEntry(
                path=name,
                size=size,
                compressed_size=compressed_size,
                method=method,
                crc=crc,
                header_offset=header_offset,
                flags=flags,
                source=source,
            )


def _apply_zip64_extra(
    extra: bytes, size: int, compressed_size: int, header_offset: int
) -> tuple[int, int, int]:
    """Replace saturated 32-bit fields with their ZIP64 extra-field values."""
    pos = 0
    while pos + 4 <= len(extra):
        tag, length = struct.unpack_from("<2H", extra, pos)
        body = extra[pos + 4:pos + 4 + length]
        pos += 4 + length
        if tag != _ZIP64_EXTRA_ID:
            continue
        values = list(struct.unpack_from(f"<{len(body) // 8}Q", body))
        if size == 0xFFFFFFFF and values:
            size = values.pop(0)
        if compressed_size == 0xFFFFFFFF and values:
            compressed_size = values.pop(0)
        if header_offset == 0xFFFFFFFF and values:
            header_offset = values.pop(0)
        break
    return size, compressed_size, header_offset
