"""
Sector Heuristics — Flag (never reject) data that looks unhealthy.

Two independent checks, both advisory:
  • Suspect sector     — all bytes 0x00 / 0xFF, the signature of a region
                         the drive never managed to read.  A legitimate
                         all-zero or all-0xFF file sector is flagged too;
                         a file like that is rarely worth keeping anyway.
  • Clean predecessor  — the sector right before a file's first sector
                         should end with a NULL byte.  If it doesn't, the
                         claimed start sector may be wrong.  Can false-flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .sector_reader import SECTOR_SIZE

logger = logging.getLogger(__name__)

# Bytes an unread / blanked region is filled with
_FILL_BYTES = b"\x00\xFF"

WARN_UNCLEAN_PREDECESSOR = "unclean_predecessor"
WARN_SUSPECT_FIRST_SECTOR = "suspect_first_sector"
WARN_PREDECESSOR_UNREADABLE = "predecessor_unreadable"


@dataclass(frozen=True)
class IntegrityWarning:
    """Advisory finding attached to an extraction report."""
    kind: str
    sector: int
    message: str


def _check_sector(data: bytes):
    if len(data) != SECTOR_SIZE:
        raise ValueError(
            f"expected a {SECTOR_SIZE}-byte sector, got {len(data)} bytes")


def is_sector_suspect(data: bytes) -> bool:
    """True if every byte of the sector is 0x00 or 0xFF."""
    _check_sector(data)
    # Fast reject: first/last byte
    if data[0] not in _FILL_BYTES or data[-1] not in _FILL_BYTES:
        return False
    return not data.translate(None, _FILL_BYTES)


def followed_clean_data(previous_sector: bytes) -> bool:
    """True if the sector before a file's data ends with 0x00."""
    _check_sector(previous_sector)
    return previous_sector[SECTOR_SIZE - 1] == 0x00
