"""Flat tar archive writer and tolerant reader.

Archives are plain ustar: one 512-byte header per regular file, the
content padded to a block boundary, and two zero blocks at the end. No
compression and no directories. Header numbers are zero-padded octal,
right-justified and NUL-terminated, which standard tar implementations
read back unchanged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple, Union

__all__ = ["BLOCK_SIZE", "ArchiveEntry", "pack", "unpack"]

logger = logging.getLogger(__name__)

BLOCK_SIZE = 512
ZERO_BLOCK = bytes(BLOCK_SIZE)

FILE_MODE = 0o644
OWNER_ID = 0o1000
GROUP_ID = 0o1000
REGTYPE = b"0"
# "\0" is written by pre-POSIX tools, "7" (contiguous file) is read as a regular file
REGULAR_TYPES = (REGTYPE, b"\0", b"7")
GNU_LONGNAME = b"L"
PAX_HEADER = b"x"
PAX_GLOBAL_HEADER = b"g"
USTAR_MAGIC = b"ustar\0"
USTAR_VERSION = b"00"

NAME_SIZE = 100
PREFIX_SIZE = 155


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    size: int
    content: bytes

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


def _octal(value: int, width: int) -> bytes:
    digits = format(value, "o")
    if value < 0 or len(digits) > width - 1:
        raise ValueError(f"Value {value} does not fit in a {width}-byte tar field")
    return digits.rjust(width - 1, "0").encode("ascii") + b"\0"


def _field(value: bytes, width: int) -> bytes:
    return value[:width].ljust(width, b"\0")


def _split_name(name: str) -> Tuple[bytes, bytes]:
    encoded = name.encode("utf-8")
    if not encoded:
        raise ValueError("Archive entry name must not be empty")
    if len(encoded) <= NAME_SIZE:
        return encoded, b""
    # ustar keeps long paths as prefix + "/" + name
    for i in range(len(encoded) - 1, 0, -1):
        if encoded[i:i + 1] != b"/":
            continue
        prefix, rest = encoded[:i], encoded[i + 1:]
        if len(prefix) <= PREFIX_SIZE and 0 < len(rest) <= NAME_SIZE:
            return rest, prefix
    raise ValueError(f"Archive entry name too long: {name!r}")


def _header(name: str, size: int, mtime: int) -> bytes:
    short_name, prefix = _split_name(name)
    header = b"".join([
        _field(short_name, NAME_SIZE),
        _octal(FILE_MODE, 8),
        _octal(OWNER_ID, 8),
        _octal(GROUP_ID, 8),
        _octal(size, 12),
        _octal(mtime, 12),
        b" " * 8,
        REGTYPE,
        _field(b"", 100),
        USTAR_MAGIC,
        USTAR_VERSION,
        _field(b"", 32),
        _field(b"", 32),
        _field(b"", 8),
        _field(b"", 8),
        _field(prefix, PREFIX_SIZE),
    ]).ljust(BLOCK_SIZE, b"\0")
    checksum = sum(header)
    return header[:148] + _octal(checksum, 8) + header[156:]


def _padding(size: int) -> int:
    return -size % BLOCK_SIZE


def pack(
    entries: Iterable[Union[ArchiveEntry, Tuple[str, Union[str, bytes]]]],
    mtime: Optional[int] = None,
) -> bytes:
    """Serialize ``(name, content)`` pairs into a tar archive, keeping their order.

    Text content is stored UTF-8 encoded. ``mtime`` defaults to the
    current time and is shared by all entries.
    """
    if mtime is None:
        mtime = int(time.time())

    out = bytearray()
    for entry in entries:
        if isinstance(entry, ArchiveEntry):
            name, content = entry.name, entry.content
        else:
            name, content = entry
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        out += _header(name, len(data), mtime)
        out += data
        out += bytes(_padding(len(data)))
    out += ZERO_BLOCK * 2
    return bytes(out)


def _nts(field: bytes) -> bytes:
    return field.split(b"\0", 1)[0]


def _number(field: bytes) -> int:
    if field[0] & 0x80:
        # GNU base-256 for values that overflow the octal field
        if field[0] != 0x80:
            raise ValueError("Negative base-256 number in tar header")
        return int.from_bytes(field[1:], "big")
    digits = _nts(field).strip(b" ")
    return int(digits or b"0", 8)


def _entry_name(header: bytes) -> str:
    name = _nts(header[0:NAME_SIZE])
    if header[257:263] == USTAR_MAGIC:
        prefix = _nts(header[345:345 + PREFIX_SIZE])
        if prefix:
            name = prefix + b"/" + name
    return name.decode("utf-8", errors="replace")


def _pax_records(content: bytes) -> Dict[str, str]:
    """Parse "<length> <key>=<value>\\n" records of a pax extended header."""
    records = {}
    pos = 0
    while pos < len(content) and content[pos:pos + 1] != b"\0":
        space = content.find(b" ", pos)
        if space < 0:
            raise ValueError("Malformed pax record")
        length = int(content[pos:space])
        record = content[space + 1:pos + length]
        if length <= 0 or not record.endswith(b"\n") or b"=" not in record:
            raise ValueError("Malformed pax record")
        key, value = record[:-1].split(b"=", 1)
        records[key.decode("utf-8")] = value.decode("utf-8", errors="replace")
        pos += length
    return records


def unpack(data: bytes) -> List[ArchiveEntry]:
    """Read regular files from a tar archive.

    Reading stops at the end-of-archive marker (a zero block followed by
    another zero block or the end of the buffer). A lone zero block is
    skipped as padding. GNU long-name records and pax extended headers
    rename the member that follows them; other non-regular members are
    skipped. On a corrupt header or truncated content, the entries read
    so far are returned.
    """
    entries: List[ArchiveEntry] = []
    total = len(data)
    offset = 0
    long_name: Optional[str] = None
    pax: Dict[str, str] = {}
    pax_global: Dict[str, str] = {}

    while offset + BLOCK_SIZE <= total:
        header = bytes(data[offset:offset + BLOCK_SIZE])
        if header == ZERO_BLOCK:
            following = data[offset + BLOCK_SIZE:offset + 2 * BLOCK_SIZE]
            if not any(following):
                break
            offset += BLOCK_SIZE
            continue

        try:
            size = _number(header[124:136])
        except ValueError:
            logger.warning("Corrupt tar header at offset %d, keeping %d entries", offset, len(entries))
            break

        typeflag = header[156:157]
        name = _entry_name(header)
        start = offset + BLOCK_SIZE
        end = start + size
        if end > total:
            logger.warning("Tar entry %r is truncated, keeping %d entries", name, len(entries))
            break
        content = bytes(data[start:end])
        offset = end + _padding(size)

        if typeflag == GNU_LONGNAME:
            long_name = _nts(content).decode("utf-8", errors="replace")
            continue
        if typeflag in (PAX_HEADER, PAX_GLOBAL_HEADER):
            try:
                records = _pax_records(content)
            except ValueError:
                logger.warning("Corrupt pax header at offset %d, keeping %d entries", start - BLOCK_SIZE, len(entries))
                break
            (pax if typeflag == PAX_HEADER else pax_global).update(records)
            continue

        overrides = {**pax_global, **pax}
        if "path" in overrides:
            name = overrides["path"]
        elif long_name is not None:
            name = long_name
        long_name, pax = None, {}

        if typeflag in REGULAR_TYPES:
            entries.append(ArchiveEntry(name=name, size=size, content=content))
        else:
            logger.debug("Skipping non-regular tar member %r (type %r)", name, typeflag)

    return entries
