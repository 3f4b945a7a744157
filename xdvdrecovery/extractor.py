"""
Extraction Engine — Copy one file entry's sectors to an output sink.

For a file entry:
  1. Bounds check — a start sector past the end of the image is skipped
     (OutOfBoundsError) before anything is read.
  2. Predecessor check — sector start-1 should end with 0x00.
  3. Sector walk — ceil(size / 2048) sectors (at least one); the first one
     is checked for uniform 0x00/0xFF fill.
  4. The last sector is truncated so exactly `size` bytes are written.

Warnings never stop extraction.  A read failure mid-file stops the walk
and is reported as a partial extraction; bytes already written are kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from .directory import DirectoryEntry
from .heuristics import (
    IntegrityWarning, is_sector_suspect, followed_clean_data,
    WARN_UNCLEAN_PREDECESSOR, WARN_SUSPECT_FIRST_SECTOR,
    WARN_PREDECESSOR_UNREADABLE,
)
from .sector_reader import SECTOR_SIZE, SectorReader, SectorReadError

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """An entry could not be extracted at all."""

    def __init__(self, message: str, entry: Optional[DirectoryEntry] = None):
        super().__init__(message)
        self.entry = entry


class OutOfBoundsError(ExtractionError):
    """The entry's start sector lies at or beyond the end of the image."""


@dataclass
class ExtractionReport:
    """Outcome of extracting one entry."""
    entry: DirectoryEntry
    bytes_written: int = 0
    sectors_read: int = 0
    predecessor_unclean: bool = False
    first_sector_suspect: bool = False
    read_failed: bool = False
    error: str = ""
    warnings: list[IntegrityWarning] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.read_failed and self.bytes_written == self.entry.size

    @property
    def status(self) -> str:
        if self.read_failed:
            return "partial"
        if self.warnings:
            return "warning"
        return "ok"


def check_bounds(reader: SectorReader, entry: DirectoryEntry):
    """Raise OutOfBoundsError if the entry starts outside the image."""
    if entry.start_sector * SECTOR_SIZE >= reader.size:
        raise OutOfBoundsError(
            f"{entry.name}: sector 0x{entry.start_sector:X} goes past the "
            f"boundaries of the disc ({reader.size} bytes)",
            entry=entry,
        )


def extract(reader: SectorReader, entry: DirectoryEntry,
            sink: BinaryIO) -> ExtractionReport:
    """
    Write the data of file `entry` to `sink`.

    Raises ExtractionError if the entry is not a file, OutOfBoundsError if
    it starts past the end of the image.  Everything else is reported.
    """
    if not entry.is_file:
        raise ExtractionError(
            f"{entry.name}: not a file entry (flags=0x{entry.flags:02X})",
            entry=entry,
        )
    check_bounds(reader, entry)

    report = ExtractionReport(entry=entry)

    # Sector -1 does not exist
    if entry.start_sector > 0:
        prev = entry.start_sector - 1
        try:
            if not followed_clean_data(reader.read_sector(prev)):
                report.predecessor_unclean = True
                report.warnings.append(IntegrityWarning(
                    WARN_UNCLEAN_PREDECESSOR, prev,
                    "sector before the file had non-zero data"))
                logger.warning("%s: sector 0x%X before the file had non-zero data",
                               entry.name, prev)
        except SectorReadError as e:
            report.warnings.append(IntegrityWarning(
                WARN_PREDECESSOR_UNREADABLE, prev, str(e)))
            logger.warning("%s: could not read sector 0x%X before the file: %s",
                           entry.name, prev, e)

    remaining = entry.size
    for i in range(entry.sector_count):
        sector = entry.start_sector + i
        try:
            data = reader.read_sector(sector)
        except SectorReadError as e:
            report.read_failed = True
            report.error = str(e)
            logger.warning("%s: read failed at sector 0x%X after %d bytes: %s",
                           entry.name, sector, report.bytes_written, e)
            break
        report.sectors_read += 1

        if i == 0 and is_sector_suspect(data):
            report.first_sector_suspect = True
            report.warnings.append(IntegrityWarning(
                WARN_SUSPECT_FIRST_SECTOR, sector,
                "first sector of the file is zeroed, data is probably missing"))
            logger.warning("%s: first sector 0x%X is zeroed, data is probably missing",
                           entry.name, sector)

        chunk = min(SECTOR_SIZE, remaining)
        if chunk > 0:
            sink.write(data[:chunk])
            report.bytes_written += chunk
            remaining -= chunk

    logger.info("%s: wrote %d/%d bytes from %d sector(s) [%s]",
                entry.name, report.bytes_written, entry.size,
                report.sectors_read, report.status)
    return report
