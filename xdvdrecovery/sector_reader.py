"""
Sector Reader — 2048-byte sector-aligned access to an XDVDFS disc image.

APPROACH
────────
1. Memory-mapped I/O (mmap) when the handle supports it — the OS handles paging.
2. Fallback to plain seek()+read() for streams that cannot be mapped
   (pipes, in-memory buffers, pytsk3-backed images).
3. Every read is exact: a short read on a truncated image raises
   SectorReadError instead of returning a partial buffer, so callers can
   skip one entry and carry on with the rest.
4. Optional pytsk3 backend (pip install pytsk3) so images The Sleuth Kit
   knows how to open (split raw images, etc.) can be read the same way.
"""

from __future__ import annotations

import io
import os
import mmap
import logging
from typing import Optional, BinaryIO

logger = logging.getLogger(__name__)

# Optional: pytsk3 image backend
try:
    import pytsk3
    HAS_TSK = True
except ImportError:
    HAS_TSK = False
    logger.debug("pytsk3 not installed — TSK image backend disabled")

# XDVDFS sector size (same as every DVD)
SECTOR_SIZE = 0x800


class SectorReadError(OSError):
    """The image is shorter than required, or the read position is invalid."""

    def __init__(self, message: str, sector: Optional[int] = None,
                 entries: Optional[list] = None):
        super().__init__(message)
        self.sector = sector
        # Directory entries decoded before the failure (decoder only)
        self.entries = entries if entries is not None else []


class ImageOpenError(OSError):
    """The backing image could not be opened at all."""


def align_down(offset: int, alignment: int = SECTOR_SIZE) -> int:
    """Round offset DOWN to the nearest sector boundary."""
    return (offset // alignment) * alignment


def sector_from_byte_offset(offset: int) -> int:
    """Sector index containing byte `offset` (truncates downward)."""
    if offset < 0:
        raise ValueError(f"byte offset must not be negative: {offset}")
    return offset // SECTOR_SIZE


def tsk_available() -> bool:
    """Check if pytsk3 is installed and usable."""
    return HAS_TSK


class TSKImageStream(io.RawIOBase):
    """Read-only seekable stream over a pytsk3.Img_Info.

    pytsk3 exposes random access as read(offset, length) / get_size();
    this adapter gives it the file-object interface SectorReader expects.
    """

    def __init__(self, image_path: str):
        super().__init__()
        if not HAS_TSK:
            raise ImageOpenError("pytsk3 is not installed (pip install pytsk3)")
        self._img = pytsk3.Img_Info(image_path)
        self._size = self._img.get_size()
        self._pos = 0

    @property
    def size(self) -> int:
        return self._size

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            pos = offset
        elif whence == io.SEEK_CUR:
            pos = self._pos + offset
        elif whence == io.SEEK_END:
            pos = self._size + offset
        else:
            raise ValueError(f"invalid whence: {whence}")
        if pos < 0:
            raise ValueError(f"negative seek position {pos}")
        self._pos = pos
        return self._pos

    def tell(self) -> int:
        return self._pos

    def readinto(self, buffer) -> int:
        remaining = self._size - self._pos
        length = min(len(buffer), remaining)
        if length <= 0:
            return 0
        data = self._img.read(self._pos, length)
        n = len(data)
        buffer[:n] = data
        self._pos += n
        return n

    def close(self):
        if not self.closed:
            try:
                self._img.close()
            finally:
                super().close()


class SectorReader:
    """
    Sector-aligned reader over a disc image with its own logical cursor.

    Usage:
        with open_image("damaged.img") as reader:
            reader.seek_sector(0x51)
            header = reader.read(4)
            data = reader.read_sector(0x52)

    The cursor is mutated by every seek/read; one reader must not be
    shared between threads.
    """

    def __init__(
        self,
        fd: BinaryIO,
        total_size: int,
        use_mmap: bool = True,
    ):
        self._fd = fd
        self._size = total_size
        self._pos = 0
        self._mmap: Optional[mmap.mmap] = None
        self._using_mmap = False

        if use_mmap and total_size > 0:
            self._try_mmap()

    def _try_mmap(self):
        """Attempt to memory-map the file/device."""
        try:
            self._mmap = mmap.mmap(
                self._fd.fileno(),
                0,  # Map entire file
                access=mmap.ACCESS_READ,
            )
            self._using_mmap = True
            logger.info(
                "mmap enabled: %d bytes (%.1f GB)",
                self._size, self._size / (1024 ** 3),
            )
        except (OSError, ValueError, OverflowError) as e:
            # io.UnsupportedOperation (no fileno) is both OSError and ValueError
            logger.info("mmap unavailable (%s), using buffered reads", e)
            self._mmap = None
            self._using_mmap = False

    @property
    def is_mmap(self) -> bool:
        return self._using_mmap

    @property
    def size(self) -> int:
        return self._size

    @property
    def total_sectors(self) -> int:
        """Number of whole sectors in the image."""
        return self._size // SECTOR_SIZE

    @property
    def position(self) -> int:
        return self._pos

    def contains_sector(self, sector_index: int) -> bool:
        """True if the first byte of `sector_index` lies inside the image."""
        return 0 <= sector_index * SECTOR_SIZE < self._size

    def read_at(self, offset: int, size: int) -> bytes:
        """
        Read up to `size` bytes starting at `offset`.

        Uses mmap slice if available, otherwise seeks+reads. Returns fewer
        bytes (possibly none) near the end of the image. A device error
        (EIO on a bad sector, failed seek) raises SectorReadError.
        """
        if offset < 0 or offset >= self._size:
            return b""
        size = min(size, self._size - offset)
        if size <= 0:
            return b""

        try:
            if self._using_mmap and self._mmap is not None:
                return self._mmap[offset:offset + size]

            self._fd.seek(offset)
            chunks = []
            remaining = size
            while remaining > 0:
                chunk = self._fd.read(remaining)
                if not chunk:
                    break
                chunks.append(chunk)
                remaining -= len(chunk)
            return b"".join(chunks)
        except (OSError, ValueError) as e:
            raise SectorReadError(
                f"unreadable data at offset 0x{offset:X} ({size} bytes): {e}",
                sector=offset // SECTOR_SIZE,
            ) from e

    def seek_sector(self, sector_index: int) -> int:
        """Position the cursor at the first byte of `sector_index`."""
        if sector_index < 0:
            raise SectorReadError(
                f"cannot seek to negative sector {sector_index}",
                sector=sector_index,
            )
        self._pos = sector_index * SECTOR_SIZE
        return self._pos

    def skip(self, count: int):
        """Advance the cursor without reading."""
        self._pos += count

    def read(self, count: int) -> bytes:
        """Read exactly `count` bytes at the cursor and advance it."""
        data = self.read_at(self._pos, count)
        if len(data) < count:
            raise SectorReadError(
                f"short read at offset 0x{self._pos:X}: wanted {count} bytes, "
                f"image has {len(data)} ({self._size} bytes total)",
                sector=self._pos // SECTOR_SIZE,
            )
        self._pos += count
        return data

    def read_sector(self, sector_index: int) -> bytes:
        """Read the whole 2048-byte sector `sector_index`."""
        self.seek_sector(sector_index)
        try:
            return self.read(SECTOR_SIZE)
        except SectorReadError as e:
            raise SectorReadError(
                f"sector 0x{sector_index:X} could not be read "
                f"({self._size} byte image): {e}",
                sector=sector_index,
            ) from e

    def close(self):
        """Release mmap resources."""
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
            self._using_mmap = False

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class _OwnedSectorReader(SectorReader):
    """SectorReader that also closes the handle open_image() opened."""

    def close(self):
        try:
            super().close()
        finally:
            if not self._fd.closed:
                self._fd.close()


def open_image(path: str, use_mmap: bool = True,
               use_tsk: bool = False) -> SectorReader:
    """
    Open a disc image (file or block device) for sector reads.

    With `use_tsk` the image is opened through pytsk3.Img_Info instead of
    a plain file handle. Raises ImageOpenError if the image can't be opened.
    """
    if use_tsk:
        if not HAS_TSK:
            raise ImageOpenError("pytsk3 is not installed (pip install pytsk3)")
        try:
            fd = TSKImageStream(path)
        except OSError as e:
            raise ImageOpenError(f"TSK could not open '{path}': {e}") from e
        logger.info("Opened %s through pytsk3 (%d bytes)", path, fd.size)
        return _OwnedSectorReader(fd, fd.size, use_mmap=False)

    if not os.path.exists(path):
        raise ImageOpenError(f"File '{path}' does not exist.")
    try:
        fd = open(path, "rb")
    except OSError as e:
        raise ImageOpenError(f"Cannot open '{path}': {e}") from e

    try:
        # Block devices report st_size 0, so measure by seeking to the end
        fd.seek(0, os.SEEK_END)
        total = fd.tell()
        fd.seek(0)
    except OSError as e:
        fd.close()
        raise ImageOpenError(f"Cannot seek '{path}': {e}") from e

    logger.info("Opened %s (%d bytes, %d sectors)",
                path, total, total // SECTOR_SIZE)
    return _OwnedSectorReader(fd, total, use_mmap=use_mmap)
