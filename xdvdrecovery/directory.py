"""
Directory Decoder — Read one XDVDFS directory table, no recursion.

Record layout (little-endian), repeated until the sentinel:

    u32 unknown        0xFFFFFFFF = end of directory
    u32 start_sector   0 = directory is broken, stop here
    u32 size
    u8  flags          0x10 = directory, 0x80 = file
    u8  name_length
    u8[name_length]    ASCII name, no terminator
    -- padding to the next 4-byte boundary --

Subdirectories are listed but never entered.
"""

from __future__ import annotations

import struct
import logging
from dataclasses import dataclass
from typing import Iterator

from .sector_reader import SECTOR_SIZE, SectorReader, SectorReadError

logger = logging.getLogger(__name__)

END_OF_DIRECTORY = 0xFFFFFFFF

FLAG_DIRECTORY = 0x10
FLAG_FILE = 0x80

# How a decode pass stopped
TERMINATION_SENTINEL = "sentinel"
TERMINATION_BROKEN = "structural_break"

_U32 = struct.Struct("<I")
_SIZE_FLAGS_LEN = struct.Struct("<IBB")


@dataclass(frozen=True)
class DirectoryEntry:
    """One decoded directory record."""
    unknown_field: int      # first u32 of the record, kept as-is
    start_sector: int       # sector where the file data / subdirectory table starts
    size: int               # byte length of the data for files
    flags: int              # FLAG_DIRECTORY, FLAG_FILE or something unrecognized
    name: str
    offset: int = 0         # absolute byte offset of the record in the image

    @property
    def is_directory(self) -> bool:
        return self.flags == FLAG_DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.flags == FLAG_FILE

    @property
    def kind(self) -> str:
        if self.is_directory:
            return "Directory"
        if self.is_file:
            return "File"
        return "Unknown"

    @property
    def byte_offset(self) -> int:
        return self.start_sector * SECTOR_SIZE

    @property
    def sector_count(self) -> int:
        """Sectors spanned by the data, at least one even for empty files."""
        return max(1, -(-self.size // SECTOR_SIZE))


@dataclass(frozen=True)
class DirectoryListing:
    """Entries of one directory in on-disk order, plus how decoding ended."""
    start_sector: int
    entries: tuple[DirectoryEntry, ...] = ()
    termination: str = TERMINATION_SENTINEL

    @property
    def broken(self) -> bool:
        return self.termination == TERMINATION_BROKEN

    @property
    def files(self) -> list[DirectoryEntry]:
        return [e for e in self.entries if e.is_file]

    @property
    def directories(self) -> list[DirectoryEntry]:
        return [e for e in self.entries if e.is_directory]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[DirectoryEntry]:
        return iter(self.entries)

    def __getitem__(self, index):
        return self.entries[index]


def decode_directory(reader: SectorReader, start_sector: int) -> DirectoryListing:
    """
    Decode the directory table starting at `start_sector`.

    Stops normally at the 0xFFFFFFFF sentinel, or early (without raising)
    on a record whose start sector is 0. A truncated image raises
    SectorReadError carrying the entries decoded so far in `.entries`.
    """
    entries: list[DirectoryEntry] = []
    termination = TERMINATION_SENTINEL
    reader.seek_sector(start_sector)

    while True:
        record_offset = reader.position
        try:
            unknown = _U32.unpack(reader.read(4))[0]
            if unknown == END_OF_DIRECTORY:
                break

            start = _U32.unpack(reader.read(4))[0]
            if start == 0:
                logger.warning(
                    "Folder broken at offset 0x%X (zero start sector), "
                    "stopping read after %d entries",
                    record_offset, len(entries),
                )
                termination = TERMINATION_BROKEN
                break

            size, flags, name_len = _SIZE_FLAGS_LEN.unpack(reader.read(6))
            raw_name = reader.read(name_len)
        except SectorReadError as e:
            raise SectorReadError(
                f"directory at sector 0x{start_sector:X} runs past the end "
                f"of the image: {e}",
                sector=e.sector,
                entries=list(entries),
            ) from e

        # errors="replace" keeps one character per byte
        name = raw_name.decode("ascii", errors="replace")

        pad = -reader.position % 4
        if pad:
            reader.skip(pad)

        entry = DirectoryEntry(
            unknown_field=unknown,
            start_sector=start,
            size=size,
            flags=flags,
            name=name,
            offset=record_offset,
        )
        logger.debug("Entry %r at 0x%X: sector=0x%X size=%d flags=0x%02X",
                     name, record_offset, start, size, flags)
        entries.append(entry)

    logger.info("Decoded %d entries from directory at sector 0x%X (%s)",
                len(entries), start_sector, termination)
    return DirectoryListing(start_sector=start_sector, entries=tuple(entries),
                            termination=termination)
