"""
Recovery Manager — Orchestrates decoding, extraction, and reporting.
"""

import os
import csv
import json
import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Callable

from .sector_reader import (
    SectorReader, SectorReadError, open_image, sector_from_byte_offset,
)
from .directory import DirectoryEntry, DirectoryListing, decode_directory
from .extractor import ExtractionError, ExtractionReport, extract

logger = logging.getLogger(__name__)

MODE_LIST = "list"
MODE_EXTRACT = "extract"
MODES = (MODE_LIST, MODE_EXTRACT)

LOG_FILENAME = "recovery_log.json"

# Characters that can't appear in a single output path component
_UNSAFE_NAME_CHARS = set('/\\:*?"<>|')


@dataclass
class RecoveryOptions:
    """Knobs for one recovery pass."""
    write_empty_files: bool = True      # size 0 → empty output file (False: skip)
    use_mmap: bool = True
    use_tsk: bool = False               # open the image through pytsk3
    overwrite: bool = True              # False: NAME_1, NAME_2, ... on collision
    save_log: bool = True               # recovery_log.json after an extract pass


@dataclass
class RecoveryTarget:
    """What to recover: an image, a directory offset, and a mode."""
    image_path: str
    directory_offset: int
    mode: str = MODE_LIST
    output_dir: str = ""

    def __post_init__(self):
        if self.mode not in MODES:
            raise ValueError(
                f"Please specify either 'list' or 'extract' as a mode (got {self.mode!r}).")
        if self.directory_offset < 0:
            raise ValueError(f"directory offset must not be negative: {self.directory_offset}")

    @property
    def extract_mode(self) -> bool:
        return self.mode == MODE_EXTRACT

    @property
    def start_sector(self) -> int:
        return sector_from_byte_offset(self.directory_offset)


@dataclass
class EntryResult:
    """What happened to one directory entry."""
    entry: DirectoryEntry
    out_of_bounds: bool = False
    report: Optional[ExtractionReport] = None
    output_path: str = ""
    skipped_reason: str = ""
    error: str = ""

    @property
    def extracted(self) -> bool:
        return self.report is not None

    def as_dict(self) -> dict:
        e = self.entry
        d = {
            "name": e.name,
            "type": e.kind,
            "flags": f"0x{e.flags:02X}",
            "sector": e.start_sector,
            "offset_hex": f"0x{e.byte_offset:08X}",
            "size": e.size,
            "unknown": f"0x{e.unknown_field:08X}",
            "out_of_bounds": self.out_of_bounds,
            "skipped": self.skipped_reason,
            "error": self.error,
            "path": self.output_path,
        }
        if self.report is not None:
            r = self.report
            d.update({
                "status": r.status,
                "bytes_written": r.bytes_written,
                "sectors_read": r.sectors_read,
                "predecessor_unclean": r.predecessor_unclean,
                "first_sector_suspect": r.first_sector_suspect,
                "read_failed": r.read_failed,
                "warnings": [w.message for w in r.warnings],
            })
        return d


@dataclass
class RecoverySession:
    """Represents one recovery pass over a directory."""
    session_id: str
    target: RecoveryTarget
    start_sector: int
    output_dir: str = ""
    image_size: int = 0
    listing: Optional[DirectoryListing] = None
    decode_error: str = ""
    results: list[EntryResult] = field(default_factory=list)
    used_paths: set = field(default_factory=set)  # output paths taken this pass
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def duration_human(self) -> str:
        d = self.duration
        if d < 60:
            return f"{d:.1f}s"
        if d < 3600:
            return f"{d / 60:.1f}m"
        return f"{d / 3600:.1f}h"

    @property
    def directory_broken(self) -> bool:
        return self.listing is not None and self.listing.broken

    @property
    def files_extracted(self) -> int:
        return sum(1 for r in self.results if r.extracted)

    @property
    def total_bytes_written(self) -> int:
        return sum(r.report.bytes_written for r in self.results if r.report)

    @property
    def warning_count(self) -> int:
        return sum(len(r.report.warnings) for r in self.results if r.report)

    @property
    def summary(self) -> dict:
        return {
            "entries": len(self.results),
            "files": sum(1 for r in self.results if r.entry.is_file),
            "directories": sum(1 for r in self.results if r.entry.is_directory),
            "extracted": self.files_extracted,
            "partial": sum(1 for r in self.results
                           if r.report and r.report.read_failed),
            "out_of_bounds": sum(1 for r in self.results if r.out_of_bounds),
            "warnings": self.warning_count,
            "bytes_written": self.total_bytes_written,
            "size_human": fmt_size(self.total_bytes_written),
            "duration": self.duration_human,
            "directory_broken": self.directory_broken,
        }


def default_output_dir(start_sector: int) -> str:
    return f"recovered_0x{start_sector:X}"


def safe_output_name(name: str, index: int = 0) -> str:
    """Turn an on-disc name into a single, harmless path component."""
    cleaned = "".join(
        "_" if (c in _UNSAFE_NAME_CHARS or ord(c) < 0x20 or c == "\ufffd") else c
        for c in name
    ).strip()
    if cleaned in ("", ".", ".."):
        cleaned = f"entry_{index:04d}"
    return cleaned


def format_entry_line(entry: DirectoryEntry) -> str:
    """One listing line: NAME - 0xOFFSET - Type[ - N bytes]."""
    line = f"{entry.name} - 0x{entry.byte_offset:08X} - {entry.kind}"
    if entry.is_file:
        line += f" - {entry.size} bytes"
    return line


class RecoveryManager:
    """High-level manager for XDVDFS directory recovery."""

    def __init__(self, options: Optional[RecoveryOptions] = None):
        self.options = options or RecoveryOptions()
        self.current_session: Optional[RecoverySession] = None
        self._on_entry: Optional[Callable] = None
        self._on_progress: Optional[Callable] = None

    def set_callbacks(self, on_entry=None, on_progress=None):
        """
        on_entry(result: EntryResult) — after each entry is handled.
        on_progress(done: int, total: int) — after each entry, for progress bars.
        """
        self._on_entry = on_entry
        self._on_progress = on_progress

    # ─── Recovery pass ────────────────────────────────────────

    def recover(self, target: RecoveryTarget) -> RecoverySession:
        """
        Decode the directory at `target.directory_offset` and, in extract
        mode, write every file entry to the output directory.

        Only an image that can't be opened raises (ImageOpenError).
        """
        with open_image(target.image_path, use_mmap=self.options.use_mmap,
                        use_tsk=self.options.use_tsk) as reader:
            return self.recover_from(reader, target)

    def recover_from(self, reader: SectorReader,
                     target: RecoveryTarget) -> RecoverySession:
        """Same as recover() over an already-open reader (left open)."""
        start_sector = target.start_sector
        session = RecoverySession(
            session_id=f"recovery_{int(time.time())}",
            target=target,
            start_sector=start_sector,
            output_dir=target.output_dir or default_output_dir(start_sector),
            image_size=reader.size,
            start_time=time.time(),
        )
        self.current_session = session

        logger.info("Reading directory structure at sector 0x%X from '%s'...",
                    start_sector, target.image_path)
        self._run(reader, session)

        session.end_time = time.time()
        logger.info("Recovery finished in %s: %s",
                    session.duration_human, session.summary)

        if target.extract_mode and self.options.save_log and os.path.isdir(session.output_dir):
            log_path = os.path.join(session.output_dir, LOG_FILENAME)
            try:
                self.save_log(log_path)
            except OSError as e:
                logger.warning("Could not write %s: %s", log_path, e)
        return session

    def _run(self, reader: SectorReader, session: RecoverySession):
        try:
            listing = decode_directory(reader, session.start_sector)
        except SectorReadError as e:
            # Keep whatever was decoded before the image ran out
            logger.warning("Directory decode failed: %s", e)
            listing = DirectoryListing(
                start_sector=session.start_sector, entries=tuple(e.entries))
            session.decode_error = str(e)
        session.listing = listing

        extract_mode = session.target.extract_mode
        if extract_mode:
            os.makedirs(session.output_dir, exist_ok=True)

        total = len(listing)
        for i, entry in enumerate(listing):
            result = self._process_entry(reader, session, entry, i, extract_mode)
            session.results.append(result)
            if self._on_entry:
                self._on_entry(result)
            if self._on_progress:
                self._on_progress(i + 1, total)

    def _process_entry(self, reader: SectorReader, session: RecoverySession,
                       entry: DirectoryEntry, index: int,
                       extract_mode: bool) -> EntryResult:
        result = EntryResult(entry=entry)

        if not reader.contains_sector(entry.start_sector):
            result.out_of_bounds = True
            result.skipped_reason = "out_of_bounds"
            logger.warning("%s: sector 0x%X goes past the boundaries of the disc, skipping",
                           entry.name, entry.start_sector)
            return result

        if not extract_mode or not entry.is_file:
            return result

        if entry.size == 0 and not self.options.write_empty_files:
            result.skipped_reason = "empty"
            logger.info("%s: zero-size file skipped", entry.name)
            return result

        out_path = self._output_path(session, entry.name, index)
        try:
            with open(out_path, "wb") as out:
                result.report = extract(reader, entry, out)
            result.output_path = out_path
        except ExtractionError as e:
            result.error = str(e)
            logger.warning("Extraction failed for %s: %s", entry.name, e)
        except OSError as e:
            result.error = str(e)
            logger.error("Could not write %s: %s", out_path, e)
        return result

    def _output_path(self, session: RecoverySession, name: str, index: int) -> str:
        """
        Pick the output file for an entry. A path already written in this
        pass always gets a _1, _2... suffix; a file left by an earlier run
        only does when overwrite is off.
        """
        out_path = os.path.join(session.output_dir, safe_output_name(name, index))
        base, ext = os.path.splitext(out_path)
        c = 1
        while out_path in session.used_paths or (
                not self.options.overwrite and os.path.exists(out_path)):
            out_path = f"{base}_{c}{ext}"
            c += 1
        session.used_paths.add(out_path)
        return out_path

    # ─── Reports ──────────────────────────────────────────────

    def get_recovery_log(self) -> list[dict]:
        if not self.current_session:
            return []
        return [r.as_dict() for r in self.current_session.results]

    def save_log(self, filepath):
        s = self.current_session
        data = {
            "session": s.session_id if s else "",
            "date": time.strftime("%Y-%m-%d %H:%M:%S"),
            "image": s.target.image_path if s else "",
            "log": self.get_recovery_log(),
        }
        with open(filepath, "w") as f:
            json.dump(data, f, indent=2, default=str)

    def export_report_csv(self, filepath):
        if not self.current_session:
            return
        with open(filepath, "w", newline="") as f:
            w = csv.writer(f)
            w.writerow([
                "#", "Name", "Type", "Flags", "Sector", "Offset (hex)",
                "Size", "Bytes Written", "Status", "Warnings", "Path",
            ])
            for i, r in enumerate(self.current_session.results, 1):
                e = r.entry
                if r.out_of_bounds:
                    status = "out_of_bounds"
                elif r.report is not None:
                    status = r.report.status
                elif r.error:
                    status = "error"
                else:
                    status = r.skipped_reason or "listed"
                w.writerow([
                    i, e.name, e.kind, f"0x{e.flags:02X}", e.start_sector,
                    f"0x{e.byte_offset:X}", e.size,
                    r.report.bytes_written if r.report else 0,
                    status,
                    "; ".join(x.message for x in r.report.warnings) if r.report else "",
                    r.output_path,
                ])

    def export_report_json(self, filepath):
        if not self.current_session:
            return
        s = self.current_session
        report = {
            "session_id": s.session_id,
            "image": s.target.image_path,
            "image_size": s.image_size,
            "date": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(s.start_time)),
            "duration": s.duration_human,
            "mode": s.target.mode,
            "directory_offset_hex": f"0x{s.target.directory_offset:X}",
            "directory_sector_hex": f"0x{s.start_sector:X}",
            "termination": s.listing.termination if s.listing else None,
            "decode_error": s.decode_error or None,
            "output_dir": s.output_dir if s.target.extract_mode else None,
            "summary": s.summary,
            "entries": [
                dict(n=i, **r.as_dict()) for i, r in enumerate(s.results, 1)
            ],
        }
        with open(filepath, "w") as f:
            json.dump(report, f, indent=2, default=str)


def fmt_size(n: int) -> str:
    """Human-readable byte count (1024-based)."""
    s = float(n)
    for u in ("B", "KB", "MB", "GB"):
        if s < 1024:
            return f"{s:.1f} {u}"
        s /= 1024
    return f"{s:.1f} TB"
