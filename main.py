#!/usr/bin/env python3
"""
XDVDForenSic — XDVDFS data recovery tool, entry point.

Usage:
    python main.py damaged.img 0x28800 list
    python main.py damaged.img 0x28800 extract [output_dir]
"""

APP_VERSION = "1.1.0"

import sys
import logging
import argparse

from xdvdrecovery.manager import (
    MODES, RecoveryManager, RecoveryOptions, RecoveryTarget, EntryResult,
    format_entry_line, fmt_size,
)
from xdvdrecovery.heuristics import (
    WARN_UNCLEAN_PREDECESSOR, WARN_SUSPECT_FIRST_SECTOR,
    WARN_PREDECESSOR_UNREADABLE,
)
from xdvdrecovery.sector_reader import ImageOpenError, tsk_available

_WARNING_LINES = {
    WARN_UNCLEAN_PREDECESSOR: " ! sector before the file had non-zero data!",
    WARN_SUSPECT_FIRST_SECTOR: " !! first sector of the file is zeroed! data is probably missing.",
    WARN_PREDECESSOR_UNREADABLE: " ! sector before the file could not be read!",
}


def parse_offset(text: str) -> int:
    """Directory start address, always hexadecimal ("28800" or "0x28800")."""
    try:
        value = int(text, 16)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{text}' is not a hexadecimal address")
    if value < 0 or value > 0xFFFFFFFF:
        raise argparse.ArgumentTypeError(f"address 0x{value:X} is out of range")
    return value


def print_result(result: EntryResult):
    print(format_entry_line(result.entry))
    if result.out_of_bounds:
        print(" ! sector goes past the boundaries of the disc! skipping")
        return
    if result.error:
        print(f" ! extraction failed: {result.error}")
        return
    if result.skipped_reason == "empty":
        print(" - empty file, skipped")
        return
    report = result.report
    if report is None:
        return
    for w in report.warnings:
        print(_WARNING_LINES.get(w.kind, f" ! {w.message}"))
    if report.read_failed:
        print(f" !! read failed after {report.bytes_written} of "
              f"{result.entry.size} bytes: {report.error}")
        print(" partially extracted!")
    else:
        print(" extracted!")


def _configure_logging(verbosity: int):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="XDVDForenSic",
        description="Recover files from one directory of a damaged XDVDFS image.")
    parser.add_argument("image", help="Path to the damaged disc image")
    parser.add_argument("offset", type=parse_offset,
                        help="Directory start address (hex, e.g. 0x28800)")
    parser.add_argument("mode", choices=MODES, help="'list' or 'extract'")
    parser.add_argument("output", nargs="?", default="",
                        help="Output directory (default: recovered_0xSECTOR)")
    parser.add_argument("--skip-empty", action="store_true",
                        help="Don't create output files for zero-size entries")
    parser.add_argument("--no-overwrite", action="store_true",
                        help="Add _1, _2, ... instead of overwriting existing files")
    parser.add_argument("--no-mmap", action="store_true",
                        help="Use plain reads instead of memory-mapping the image")
    parser.add_argument("--tsk", action="store_true",
                        help="Open the image through The Sleuth Kit (pytsk3)")
    parser.add_argument("--report-json", default="", help="Write a JSON report here")
    parser.add_argument("--report-csv", default="", help="Write a CSV report here")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More log output (-v info, -vv debug)")
    return parser


def main(argv=None) -> int:
    print("XDVDForenSic - XDVDFS data recovery tool")
    print(f"v{APP_VERSION}")
    print()

    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    if args.tsk and not tsk_available():
        print("pytsk3 is not installed (pip install pytsk3).")
        return 1

    target = RecoveryTarget(
        image_path=args.image,
        directory_offset=args.offset,
        mode=args.mode,
        output_dir=args.output,
    )
    options = RecoveryOptions(
        write_empty_files=not args.skip_empty,
        use_mmap=not args.no_mmap,
        use_tsk=args.tsk,
        overwrite=not args.no_overwrite,
    )

    manager = RecoveryManager(options)
    manager.set_callbacks(on_entry=print_result)

    print(f"Reading directory structure at sector 0x{target.start_sector:X} "
          f"from '{target.image_path}'...")
    try:
        session = manager.recover(target)
    except ImageOpenError as e:
        print(e)
        return 1
    except OSError as e:
        print(f"Recovery failed: {e}")
        return 1

    if session.directory_broken:
        print("Folder broken, stopping read.")
    if session.decode_error:
        print(f"Directory read stopped early: {session.decode_error}")

    s = session.summary
    print()
    print(f"{s['entries']} entries ({s['files']} files, {s['directories']} directories) "
          f"in {session.duration_human}")
    if target.extract_mode:
        print(f"Extracted {s['extracted']} file(s), {fmt_size(s['bytes_written'])}, "
              f"{s['warnings']} warning(s), {s['partial']} partial")
        print(f"Saved to: {session.output_dir}")

    try:
        if args.report_json:
            manager.export_report_json(args.report_json)
            print(f"Report: {args.report_json}")
        if args.report_csv:
            manager.export_report_csv(args.report_csv)
            print(f"Report: {args.report_csv}")
    except OSError as e:
        print(f"Could not write report: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
