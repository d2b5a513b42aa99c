from __future__ import annotations

import os

import pytest

from pbs_chunk_gc import (
    INDEX_HEADER_SIZE,
    IndexFormatError,
    ProgressBoard,
    ScanError,
    find_index_files,
    parse_index,
    read_index_file,
    scan_indexes,
)


def test_fidx_yields_every_32_byte_record(datastore) -> None:
    digests = [datastore.digest(f"f{i}") for i in range(5)]
    path = datastore.write_fidx("vm/100/2024-01-01T00:00:00Z/drive-scsi0.img.fidx", digests)

    assert read_index_file(str(path)) == set(digests)


def test_didx_takes_digest_from_bytes_8_to_40(datastore) -> None:
    digests = [datastore.digest(f"d{i}") for i in range(3)]
    path = datastore.write_didx("ct/200/2024-01-01T00:00:00Z/root.pxar.didx", digests)

    assert read_index_file(str(path)) == set(digests)


def test_header_only_index_has_no_records() -> None:
    assert parse_index(b"\x00" * INDEX_HEADER_SIZE, ".fidx") == set()
    assert parse_index(b"\x00" * 100, ".didx") == set()


def test_duplicate_records_collapse() -> None:
    digest = bytes(range(32))
    payload = b"\x00" * INDEX_HEADER_SIZE + digest * 4
    assert parse_index(payload, ".fidx") == {digest}


def test_truncated_record_area_is_a_format_error(datastore) -> None:
    path = datastore.write_fidx("vm/100/snap/drive.fidx", [datastore.digest("a")])
    with open(path, "ab") as fh:
        fh.write(b"\x01" * 7)

    with pytest.raises(IndexFormatError) as excinfo:
        read_index_file(str(path))
    assert excinfo.value.path == str(path)


def test_unknown_extension_cannot_be_parsed() -> None:
    with pytest.raises(IndexFormatError):
        parse_index(b"\x00" * INDEX_HEADER_SIZE, ".blob")


def test_unreadable_index_raises_scan_error(datastore) -> None:
    missing = datastore.root / "vm" / "gone.fidx"
    with pytest.raises(ScanError):
        read_index_file(str(missing))


def test_discovery_skips_missing_categories_and_foreign_files(datastore) -> None:
    datastore.write_fidx("vm/100/snap/drive.fidx", [])
    datastore.write_didx("ns/team/ct/300/snap/root.pxar.didx", [])
    datastore.write_fidx("vm/100/snap/index.json.blob", [])
    datastore.write_fidx("vm/100/snap/client.log.blob", [])
    datastore.write_fidx("other/101/snap/drive.fidx", [])

    found = find_index_files(str(datastore.root))

    assert found == sorted(
        [
            str(datastore.root / "ns/team/ct/300/snap/root.pxar.didx"),
            str(datastore.root / "vm/100/snap/drive.fidx"),
        ]
    )


def test_discovery_with_no_categories_is_empty(datastore) -> None:
    assert find_index_files(str(datastore.root)) == []


def test_scan_merges_all_workers(datastore) -> None:
    expected = set()
    for vmid in range(12):
        digests = [datastore.digest(f"vm{vmid}-{i}") for i in range(4)]
        digests.append(datastore.digest("shared"))
        expected.update(digests)
        if vmid % 2:
            datastore.write_didx(f"ct/{vmid}/snap/root.pxar.didx", digests)
        else:
            datastore.write_fidx(f"vm/{vmid}/snap/drive.fidx", digests)

    for workers in (1, 3, 12, 20):
        assert scan_indexes(str(datastore.root), workers) == expected


def test_scan_with_unreadable_index_is_fatal(datastore) -> None:
    datastore.write_fidx("vm/100/snap/drive.fidx", [datastore.digest("a")])
    broken = datastore.root / "vm" / "100" / "snap" / "broken.fidx"
    os.symlink(datastore.root / "does-not-exist", broken)

    with pytest.raises(ScanError) as excinfo:
        scan_indexes(str(datastore.root), 2)
    assert excinfo.value.path == str(broken)


def test_scan_reports_progress(datastore) -> None:
    for vmid in range(3):
        datastore.write_fidx(f"vm/{vmid}/snap/drive.fidx", [datastore.digest(str(vmid))])
    board = ProgressBoard(enabled=False)
    counter = board.add("Index")

    scan_indexes(str(datastore.root), 2, progress=counter)

    assert (counter.done, counter.total) == (3, 3)


def test_unlistable_directory_during_discovery_is_fatal(datastore, monkeypatch) -> None:
    datastore.write_fidx("vm/100/snap/drive.fidx", [datastore.digest("a")])
    datastore.write_fidx("vm/101/snap/drive.fidx", [datastore.digest("b")])
    locked = str(datastore.root / "vm" / "101")
    real_scandir = os.scandir

    def guarded_scandir(path="."):
        if os.fspath(path) == locked:
            raise PermissionError(13, "Permission denied", locked)
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", guarded_scandir)

    with pytest.raises(ScanError) as excinfo:
        find_index_files(str(datastore.root))
    assert excinfo.value.path == locked
