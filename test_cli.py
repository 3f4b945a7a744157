"""
Test the recovery manager and the command-line entry point end to end
against a synthetic XDVDFS image written to disk.
"""
import io
import os
import csv
import json
import shutil
import tempfile
import contextlib

from xdvdrecovery.sector_reader import SECTOR_SIZE, ImageOpenError
from xdvdrecovery.directory import FLAG_DIRECTORY, FLAG_FILE
from xdvdrecovery.manager import (
    RecoveryManager, RecoveryOptions, RecoveryTarget, LOG_FILENAME,
    safe_output_name, format_entry_line, default_output_dir, fmt_size,
)
from test_recovery import make_record, build_image, pattern, bad_reader

import main as cli

DIR_OFFSET = 0x1000     # sector 2


def write_test_image(path, truncate_last=False):
    """
    Directory at sector 2:
      GAME.XBE   sector 4, 3000 bytes (healthy)
      MEDIA      sector 8, subdirectory
      ZERO.BIN   sector 9, 100 bytes, first sector zeroed
      EMPTY.TXT  sector 10, 0 bytes
      FAR.BIN    sector 0x1000, past the end of the image
      LAST.BIN   sector 12, 4096 bytes (the image may end inside it)
    """
    records = [
        make_record(4, 3000, FLAG_FILE, "GAME.XBE"),
        make_record(8, SECTOR_SIZE, FLAG_DIRECTORY, "MEDIA"),
        make_record(9, 100, FLAG_FILE, "ZERO.BIN"),
        make_record(10, 0, FLAG_FILE, "EMPTY.TXT"),
        make_record(0x1000, 10, FLAG_FILE, "FAR.BIN"),
        make_record(12, 4096, FLAG_FILE, "LAST.BIN"),
    ]
    files = {
        4: pattern(3000, seed=3),
        10: pattern(SECTOR_SIZE, seed=5),
        12: pattern(4096, seed=7),
    }
    data = build_image(records, dir_sector=2, total_sectors=14, files=files)
    if truncate_last:
        data = data[:14 * SECTOR_SIZE - 10]
    with open(path, "wb") as f:
        f.write(data)
    return files


class _Workspace:
    def __init__(self, truncate_last=False):
        self.tmpdir = tempfile.mkdtemp(prefix="test_xdvd_cli_")
        self.image = os.path.join(self.tmpdir, "damaged.img")
        self.out = os.path.join(self.tmpdir, "out")
        self.files = write_test_image(self.image, truncate_last)

    def close(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)


def test_list_mode_writes_nothing():
    ws = _Workspace()
    try:
        seen = []
        manager = RecoveryManager()
        manager.set_callbacks(on_entry=seen.append)
        session = manager.recover(RecoveryTarget(ws.image, DIR_OFFSET, "list", ws.out))

        assert session.start_sector == 2
        assert [r.entry.name for r in session.results] == [
            "GAME.XBE", "MEDIA", "ZERO.BIN", "EMPTY.TXT", "FAR.BIN", "LAST.BIN"]
        assert seen == session.results
        assert all(r.report is None for r in session.results)
        assert [r.entry.name for r in session.results if r.out_of_bounds] == ["FAR.BIN"]
        assert not os.path.exists(ws.out)
    finally:
        ws.close()


def test_extract_mode():
    ws = _Workspace()
    try:
        progress = []
        manager = RecoveryManager()
        manager.set_callbacks(on_progress=lambda done, total: progress.append((done, total)))
        session = manager.recover(RecoveryTarget(ws.image, DIR_OFFSET, "extract", ws.out))
        by_name = {r.entry.name: r for r in session.results}

        with open(os.path.join(ws.out, "GAME.XBE"), "rb") as f:
            assert f.read() == ws.files[4]
        assert by_name["GAME.XBE"].report.status == "ok"

        # Subdirectories are listed, never entered or written
        assert by_name["MEDIA"].report is None
        assert not os.path.exists(os.path.join(ws.out, "MEDIA"))

        zero = by_name["ZERO.BIN"].report
        assert zero.first_sector_suspect
        assert os.path.getsize(os.path.join(ws.out, "ZERO.BIN")) == 100

        assert os.path.getsize(os.path.join(ws.out, "EMPTY.TXT")) == 0

        assert by_name["FAR.BIN"].out_of_bounds
        assert not os.path.exists(os.path.join(ws.out, "FAR.BIN"))

        with open(os.path.join(ws.out, "LAST.BIN"), "rb") as f:
            assert f.read() == ws.files[12]

        assert session.files_extracted == 4
        assert session.total_bytes_written == 3000 + 100 + 0 + 4096
        assert progress[-1] == (6, 6)

        with open(os.path.join(ws.out, LOG_FILENAME)) as f:
            log = json.load(f)
        assert len(log["log"]) == 6
    finally:
        ws.close()


def test_read_failure_is_scoped_to_one_entry():
    ws = _Workspace(truncate_last=True)
    try:
        session = RecoveryManager().recover(
            RecoveryTarget(ws.image, DIR_OFFSET, "extract", ws.out))
        by_name = {r.entry.name: r for r in session.results}

        last = by_name["LAST.BIN"].report
        assert last.read_failed
        assert last.bytes_written == SECTOR_SIZE
        with open(os.path.join(ws.out, "LAST.BIN"), "rb") as f:
            assert f.read() == ws.files[12][:SECTOR_SIZE]

        # Everything before it still came out whole
        assert by_name["GAME.XBE"].report.complete
        assert session.summary["partial"] == 1
    finally:
        ws.close()


def test_skip_empty_files_option():
    ws = _Workspace()
    try:
        manager = RecoveryManager(RecoveryOptions(write_empty_files=False))
        session = manager.recover(RecoveryTarget(ws.image, DIR_OFFSET, "extract", ws.out))
        empty = [r for r in session.results if r.entry.name == "EMPTY.TXT"][0]
        assert empty.skipped_reason == "empty"
        assert not os.path.exists(os.path.join(ws.out, "EMPTY.TXT"))
    finally:
        ws.close()


def test_no_overwrite_option():
    ws = _Workspace()
    try:
        manager = RecoveryManager(RecoveryOptions(overwrite=False))
        target = RecoveryTarget(ws.image, DIR_OFFSET, "extract", ws.out)
        manager.recover(target)
        session = manager.recover(target)
        game = [r for r in session.results if r.entry.name == "GAME.XBE"][0]
        assert game.output_path == os.path.join(ws.out, "GAME_1.XBE")
        assert os.path.exists(os.path.join(ws.out, "GAME.XBE"))
    finally:
        ws.close()


def test_broken_directory_session():
    tmpdir = tempfile.mkdtemp(prefix="test_xdvd_broken_")
    try:
        image = os.path.join(tmpdir, "broken.img")
        records = [make_record(4, 10, FLAG_FILE, "OK.BIN"),
                   make_record(0, 10, FLAG_FILE, "BAD.BIN")]
        with open(image, "wb") as f:
            f.write(build_image(records, total_sectors=8,
                                files={4: pattern(SECTOR_SIZE)}))
        session = RecoveryManager().recover(
            RecoveryTarget(image, DIR_OFFSET, "list"))
        assert session.directory_broken
        assert [r.entry.name for r in session.results] == ["OK.BIN"]
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_directory_offset_past_image_end():
    ws = _Workspace()
    try:
        session = RecoveryManager().recover(
            RecoveryTarget(ws.image, 0x100000, "list", ws.out))
        assert session.start_sector == 0x200
        assert session.decode_error
        assert session.results == []
        assert len(session.listing) == 0
    finally:
        ws.close()


def test_device_error_is_scoped_to_one_entry():
    tmpdir = tempfile.mkdtemp(prefix="test_xdvd_eio_")
    try:
        records = [make_record(4, 3000, FLAG_FILE, "GAME.XBE"),
                   make_record(8, 4096, FLAG_FILE, "LAST.BIN")]
        files = {4: pattern(3000, seed=3), 8: pattern(4096, seed=7)}
        data = build_image(records, total_sectors=12, files=files)
        out = os.path.join(tmpdir, "out")

        # Second sector of GAME.XBE fails with EIO
        with bad_reader(data, bad={5}) as reader:
            session = RecoveryManager().recover_from(
                reader, RecoveryTarget("scratched.img", DIR_OFFSET, "extract", out))
        game, last = session.results

        assert game.report.read_failed
        assert game.report.bytes_written == SECTOR_SIZE
        with open(os.path.join(out, "GAME.XBE"), "rb") as f:
            assert f.read() == files[4][:SECTOR_SIZE]

        assert last.report.complete
        with open(os.path.join(out, "LAST.BIN"), "rb") as f:
            assert f.read() == files[8]
        assert session.summary["partial"] == 1
        assert os.path.exists(os.path.join(out, LOG_FILENAME))
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_duplicate_output_names():
    tmpdir = tempfile.mkdtemp(prefix="test_xdvd_dup_")
    try:
        image = os.path.join(tmpdir, "dup.img")
        records = [make_record(4, 100, FLAG_FILE, "DUP.BIN"),
                   make_record(6, 100, FLAG_FILE, "DUP.BIN"),
                   make_record(8, 100, FLAG_FILE, "a/b"),
                   make_record(10, 100, FLAG_FILE, "a_b")]
        files = {4: pattern(100, seed=3), 6: pattern(100, seed=5),
                 8: pattern(100, seed=7), 10: pattern(100, seed=9)}
        with open(image, "wb") as f:
            f.write(build_image(records, total_sectors=12, files=files))
        out = os.path.join(tmpdir, "out")

        session = RecoveryManager().recover(
            RecoveryTarget(image, DIR_OFFSET, "extract", out))
        paths = [r.output_path for r in session.results]
        assert paths == [os.path.join(out, n)
                         for n in ("DUP.BIN", "DUP_1.BIN", "a_b", "a_b_1")]
        for path, sector in zip(paths, (4, 6, 8, 10)):
            with open(path, "rb") as f:
                assert f.read() == files[sector]
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_missing_image():
    try:
        RecoveryManager().recover(RecoveryTarget("/nonexistent/disc.img", 0, "list"))
        assert False, "missing image opened"
    except ImageOpenError:
        pass


def test_target_validation():
    assert RecoveryTarget("x.img", 0x28800).start_sector == 0x51
    for bad in ({"mode": "copy"}, {"directory_offset": -1}):
        kwargs = {"image_path": "x.img", "directory_offset": 0, **bad}
        try:
            RecoveryTarget(**kwargs)
            assert False, f"accepted {bad}"
        except ValueError:
            pass


def test_reports():
    ws = _Workspace()
    try:
        manager = RecoveryManager()
        manager.recover(RecoveryTarget(ws.image, DIR_OFFSET, "extract", ws.out))
        json_path = os.path.join(ws.tmpdir, "report.json")
        csv_path = os.path.join(ws.tmpdir, "report.csv")
        manager.export_report_json(json_path)
        manager.export_report_csv(csv_path)

        with open(json_path) as f:
            report = json.load(f)
        assert report["directory_sector_hex"] == "0x2"
        assert report["termination"] == "sentinel"
        assert report["summary"]["out_of_bounds"] == 1
        assert report["entries"][0]["name"] == "GAME.XBE"
        assert report["entries"][0]["bytes_written"] == 3000

        with open(csv_path, newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0][0] == "#"
        assert len(rows) == 7
        statuses = {row[1]: row[8] for row in rows[1:]}
        assert statuses["FAR.BIN"] == "out_of_bounds"
        assert statuses["MEDIA"] == "listed"
        assert statuses["ZERO.BIN"] == "warning"
    finally:
        ws.close()


def test_output_names():
    assert safe_output_name("GAME.XBE") == "GAME.XBE"
    assert safe_output_name("a/b\\c") == "a_b_c"
    assert safe_output_name("..", 3) == "entry_0003"
    assert safe_output_name("", 7) == "entry_0007"
    assert safe_output_name("bad\x01name\ufffd") == "bad_name_"
    assert default_output_dir(0x51) == "recovered_0x51"


def test_fmt_size():
    assert fmt_size(0) == "0.0 B"
    assert fmt_size(3000) == "2.9 KB"
    assert fmt_size(5 * 1024 ** 3) == "5.0 GB"
    assert cli.fmt_size is fmt_size


def test_format_entry_line():
    from xdvdrecovery.directory import DirectoryEntry
    f = DirectoryEntry(0, 0x51, 1234, FLAG_FILE, "A.BIN")
    d = DirectoryEntry(0, 0x60, 2048, FLAG_DIRECTORY, "MEDIA")
    assert format_entry_line(f) == "A.BIN - 0x00028800 - File - 1234 bytes"
    assert format_entry_line(d) == "MEDIA - 0x00030000 - Directory"


def test_main_extract():
    ws = _Workspace()
    try:
        buf = io.StringIO()
        with contextlib.redirect_stdout(buf):
            code = cli.main([ws.image, "1000", "extract", ws.out])
        out = buf.getvalue()
        assert code == 0
        assert "Reading directory structure at sector 0x2" in out
        assert "GAME.XBE - 0x00002000 - File - 3000 bytes" in out
        assert "MEDIA - 0x00004000 - Directory" in out
        assert " !! first sector of the file is zeroed! data is probably missing." in out
        assert " ! sector goes past the boundaries of the disc! skipping" in out
        assert " extracted!" in out
        assert os.path.exists(os.path.join(ws.out, "GAME.XBE"))
    finally:
        ws.close()


def test_main_missing_image():
    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        code = cli.main(["/nonexistent/disc.img", "0x28800", "list"])
    assert code == 1
    assert "does not exist" in buf.getvalue()


def test_parse_offset():
    assert cli.parse_offset("28800") == 0x28800
    assert cli.parse_offset("0x28800") == 0x28800


def main():
    print("=" * 60)
    print("  XDVDFS Recovery Manager / CLI — Test Suite")
    print("=" * 60)
    tests = [(name, fn) for name, fn in sorted(globals().items())
             if name.startswith("test_") and callable(fn)]
    for name, fn in tests:
        fn()
        print(f"  ✅ {name}: PASS")
    print("=" * 60)
    print("  ALL TESTS PASSED ✅")
    print("=" * 60)


if __name__ == "__main__":
    main()
