#!/usr/bin/env python3

"""
PBS_Chunk_GC — Find and optionally remove PBS chunks that no backup index
references anymore.

Highlights:
- Reads every index file (*.fidx/*.didx) below vm/, ct/ and ns/ and collects
  the referenced chunk digests (mark)
- Lists all 65536 shard directories of .chunks/ in parallel (collect)
- Writes the sorted list of unreferenced chunk files to a report before
  anything is removed, then deletes them on request (sweep)

This module is self-contained and depends only on Python's standard library,
so it runs on a Proxmox Backup Server host with stock Python. The datastore
must not be written to while a run is in progress.
"""

__version__ = "1.0.0"

import argparse
import concurrent.futures as futures
import math
import os
import random
import re
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Set,
    Tuple,
)


INDEX_CATEGORIES = ("vm", "ct", "ns")
CHUNKS_DIRNAME = ".chunks"
INDEX_HEADER_SIZE = 4096
DIGEST_SIZE = 32
SHARD_COUNT = 65536
DEFAULT_WORKERS = 10

# extension -> (record size, digest offset inside the record)
# https://pbs.proxmox.com/docs/file-formats.html
INDEX_FORMATS: Dict[str, Tuple[int, int]] = {
    ".fidx": (32, 0),
    ".didx": (40, 8),
}

_DIGEST_NAME = re.compile(r"[0-9a-f]{64}")

Digest = bytes

# =============================================================================
# CLI helpers and shared utilities
# =============================================================================

EMOJI_ICONS: Dict[str, str] = {
    "error": "❌",
    "warning": "⚠️",
    "info": "ℹ️",
    "folder": "📁",
    "save": "💾",
    "index": "📄",
    "chunk": "📦",
    "garbage": "🗑️",
    "total": "🧮",
    "timer": "⏱️",
    "threads": "🧵",
}

ASCII_ICONS: Dict[str, str] = {
    "error": "[ERROR]",
    "warning": "[WARN]",
    "info": "[INFO]",
    "folder": "[DIR]",
    "save": "[SAVE]",
    "index": "[INDEX]",
    "chunk": "[CHUNK]",
    "garbage": "[GARBAGE]",
    "total": "[TOTAL]",
    "timer": "[TIME]",
    "threads": "[THREADS]",
}

ICONS: Dict[str, str] = EMOJI_ICONS.copy()


def _set_emoji_mode(enabled: bool) -> None:
    """Switch between emoji and ASCII icon sets."""
    ICONS.clear()
    ICONS.update(EMOJI_ICONS if enabled else ASCII_ICONS)


def format_elapsed(seconds: float) -> str:
    """Return a compact runtime string like '1h 02m 03s'."""
    seconds_int = int(seconds)
    hours, remainder = divmod(seconds_int, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes:02}m {secs:02}s"
    return f"{minutes}m {secs:02}s"


class ScanError(RuntimeError):
    """A mark or collect step could not complete.

    The live set or blob set would be incomplete, so the whole run has to stop
    before any garbage decision is made.
    """

    def __init__(self, path: str, cause: object) -> None:
        super().__init__(f"{path}: {cause}")
        self.path = path
        self.cause = cause


class IndexFormatError(ScanError):
    """An index file does not have the expected record layout."""


class GCConfig(NamedTuple):
    """Runtime settings, built once by main() and handed to every phase."""
    base_dir: str
    metadata_workers: int = DEFAULT_WORKERS
    blobs_workers: int = DEFAULT_WORKERS
    delete_workers: int = DEFAULT_WORKERS
    delete: bool = False
    assume_yes: bool = False
    report_dir: str = "."


# =============================================================================
# Progress rendering utilities
# =============================================================================

def _progress_line(text: str) -> None:
    """Render a single in-place progress line."""
    print(f"\r\033[K{text}", end="", flush=True)


class ProgressCounter:
    """Thread-safe counter for one phase, rendered through its board."""

    def __init__(self, board: "ProgressBoard", label: str, total: int = 0) -> None:
        self._board = board
        self.label = label
        self.total = total
        self.done = 0

    def set_total(self, total: int) -> None:
        with self._board.lock:
            self.total = total
        self._board.render()

    def increment(self, n: int = 1) -> None:
        with self._board.lock:
            self.done += n
        self._board.render()

    def describe(self) -> str:
        pct = (self.done / self.total * 100.0) if self.total else 0.0
        return f"{self.label} {self.done}/{self.total} ({pct:6.2f}%)"


class ProgressBoard:
    """Combine the counters of concurrently running phases into one line.

    Rendering is throttled to ``interval`` seconds; a disabled board still
    counts, so callers never have to check whether output is wanted.
    """

    def __init__(self, enabled: bool = True, interval: float = 0.2) -> None:
        self.enabled = enabled
        self.interval = interval
        self.lock = threading.Lock()
        self.counters: List[ProgressCounter] = []
        self._start = time.time()
        self._last_render = 0.0

    def add(self, label: str, total: int = 0) -> ProgressCounter:
        counter = ProgressCounter(self, label, total)
        with self.lock:
            self.counters.append(counter)
        return counter

    def render(self, force: bool = False) -> None:
        if not self.enabled:
            return
        with self.lock:
            now = time.time()
            if not force and now - self._last_render < self.interval:
                return
            self._last_render = now
            parts = [c.describe() for c in self.counters]
            elapsed = format_elapsed(now - self._start)
            _progress_line(" | ".join(parts) + f" | {ICONS['timer']} {elapsed}")

    def finish(self) -> None:
        """Draw the final state and move to a fresh line."""
        if not self.enabled:
            return
        self.render(force=True)
        print()


# =============================================================================
# Range partitioning and worker pool
# =============================================================================

def partition_ranges(total: int, workers: int) -> List[Tuple[int, int]]:
    """Split [0, total) into ``workers`` contiguous (start, end) ranges.

    Every range holds ceil(total / workers) items except the last one, which
    ends at ``total``. When there are fewer items than workers the trailing
    ranges are empty.
    """
    if workers <= 0:
        raise ValueError(f"worker count must be positive, got {workers}")
    if total < 0:
        raise ValueError(f"total must not be negative, got {total}")
    size = math.ceil(total / workers)
    ranges: List[Tuple[int, int]] = []
    for i in range(workers):
        start = min(i * size, total)
        end = total if i == workers - 1 else min(start + size, total)
        ranges.append((start, end))
    return ranges


def run_partitioned(
    total: int,
    workers: int,
    task: Callable[[int, int], None],
    cancel: threading.Event,
) -> None:
    """Run ``task(start, end)`` for every range of [0, total) on a thread pool.

    Returns once all workers are finished. The first worker exception sets
    ``cancel`` so siblings stop at their next unit of work, and is re-raised
    after the pool has drained.
    """
    ranges = partition_ranges(total, workers)
    with futures.ThreadPoolExecutor(max_workers=len(ranges)) as pool:
        futs = [pool.submit(task, start, end) for start, end in ranges]
        try:
            done, pending = futures.wait(futs, return_when=futures.FIRST_EXCEPTION)
        except BaseException:
            cancel.set()
            raise
        failed = [f for f in futs if f in done and f.exception() is not None]
        if failed:
            cancel.set()
            for fut in pending:
                fut.cancel()
            raise failed[0].exception()  # type: ignore[misc]


# =============================================================================
# Mark phase: index discovery and parsing
# =============================================================================

def _raise_walk_error(exc: OSError) -> None:
    raise ScanError(exc.filename or "?", exc)


def find_index_files(base_dir: str) -> List[str]:
    """Recursively find *.fidx and *.didx below the vm/ct/ns directories.

    Missing category directories are skipped. A directory that exists but
    cannot be listed raises ScanError.
    """
    matches: List[str] = []
    for category in INDEX_CATEGORIES:
        top = Path(base_dir) / category
        if not top.is_dir():
            continue
        for root, _dirs, files in os.walk(top, onerror=_raise_walk_error):
            for name in files:
                if os.path.splitext(name)[1] in INDEX_FORMATS:
                    matches.append(os.path.join(root, name))
    matches.sort()
    return matches


def parse_index(payload: bytes, extension: str) -> Set[Digest]:
    """Return the digests referenced by one index payload.

    The 4096 byte header is skipped. A payload that ends inside the header
    holds no records.
    """
    try:
        record_size, offset = INDEX_FORMATS[extension]
    except KeyError:
        raise IndexFormatError(extension, "unknown index type") from None
    body = memoryview(payload)[INDEX_HEADER_SIZE:]
    if len(body) % record_size:
        raise IndexFormatError(
            extension,
            f"record area of {len(body)} bytes is not a multiple of {record_size}",
        )
    digests: Set[Digest] = set()
    for pos in range(offset, len(body), record_size):
        digests.add(bytes(body[pos:pos + DIGEST_SIZE]))
    return digests


def read_index_file(path: str) -> Set[Digest]:
    """Read and parse one index file; any failure is a ScanError."""
    try:
        with open(path, "rb") as fh:
            payload = fh.read()
    except OSError as exc:
        raise ScanError(path, exc) from exc
    try:
        return parse_index(payload, os.path.splitext(path)[1])
    except IndexFormatError as exc:
        raise IndexFormatError(path, exc.cause) from None


def scan_indexes(
    base_dir: str,
    workers: int,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressCounter] = None,
    rng: Optional[random.Random] = None,
) -> Set[Digest]:
    """Build the live set from every index file of the datastore."""
    cancel = cancel if cancel is not None else threading.Event()
    indexes = find_index_files(base_dir)
    # index sizes cluster by category; shuffling spreads large files over workers
    (rng or random.Random()).shuffle(indexes)
    if progress is not None:
        progress.set_total(len(indexes))

    live: Set[Digest] = set()
    live_lock = threading.Lock()

    def _worker(start: int, end: int) -> None:
        local: Set[Digest] = set()
        for path in indexes[start:end]:
            if cancel.is_set():
                return
            local.update(read_index_file(path))
            if progress is not None:
                progress.increment()
        with live_lock:
            live.update(local)

    run_partitioned(len(indexes), workers, _worker, cancel)
    return live


# =============================================================================
# Collect phase: chunk store enumeration
# =============================================================================

def shard_name(index: int) -> str:
    return f"{index:04x}"


def decode_digest(name: str) -> Optional[Digest]:
    """Return the digest for a chunk file name, or None for foreign files."""
    if not _DIGEST_NAME.fullmatch(name):
        return None
    return bytes.fromhex(name)


def list_shard(chunks_root: str, index: int) -> List[Digest]:
    """Return the digests stored in one shard directory."""
    shard_dir = os.path.join(chunks_root, shard_name(index))
    try:
        with os.scandir(shard_dir) as entries:
            names = [entry.name for entry in entries]
    except OSError as exc:
        raise ScanError(shard_dir, exc) from exc
    digests: List[Digest] = []
    for name in names:
        digest = decode_digest(name)
        if digest is not None:
            digests.append(digest)
    return digests


def enumerate_blobs(
    base_dir: str,
    workers: int,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressCounter] = None,
) -> List[Digest]:
    """List every chunk present in the datastore's .chunks directory."""
    cancel = cancel if cancel is not None else threading.Event()
    chunks_root = os.path.join(base_dir, CHUNKS_DIRNAME)
    blobs: List[Digest] = []
    blobs_lock = threading.Lock()

    def _worker(start: int, end: int) -> None:
        local: List[Digest] = []
        for index in range(start, end):
            if cancel.is_set():
                return
            local.extend(list_shard(chunks_root, index))
            if progress is not None:
                progress.increment()
        with blobs_lock:
            blobs.extend(local)

    run_partitioned(SHARD_COUNT, workers, _worker, cancel)
    return blobs


# =============================================================================
# Sweep decision
# =============================================================================

def chunk_path_for_digest(chunks_root: str, digest: Digest) -> str:
    """Compute filesystem path of a chunk file from its digest."""
    encoded = digest.hex()
    return os.path.join(chunks_root, encoded[:4], encoded)


def compute_garbage(base_dir: str, live: Set[Digest], blobs: Iterable[Digest]) -> List[str]:
    """Return the sorted paths of all stored chunks missing from ``live``."""
    chunks_root = os.path.join(os.path.abspath(base_dir), CHUNKS_DIRNAME)
    garbage = [
        chunk_path_for_digest(chunks_root, digest)
        for digest in blobs
        if digest not in live
    ]
    garbage.sort()
    return garbage


def report_name(now: datetime) -> str:
    return "delete-" + now.strftime("%Y-%m-%d %H:%M:%S") + ".txt"


def write_report(paths: Sequence[str], report_dir: str, now: Optional[datetime] = None) -> Path:
    """Write the garbage list, one path per line, and return the report path.

    The file is written next to its final name and moved into place, so an
    interrupted run never leaves a truncated report behind.
    """
    report_path = Path(report_dir) / report_name(now or datetime.now())
    tmp_path = report_path.with_name(report_path.name + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            for path in paths:
                fh.write(path + "\n")
        os.replace(tmp_path, report_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    return report_path


class ScanResult(NamedTuple):
    """Outcome of the mark, collect and diff phases."""
    live: Set[Digest]
    blobs: List[Digest]
    garbage: List[str]
    elapsed: float


def collect_garbage(
    config: GCConfig,
    board: Optional[ProgressBoard] = None,
    rng: Optional[random.Random] = None,
) -> ScanResult:
    """Run mark and collect side by side, then diff their results.

    Both phases share one cancel event: a ScanError in either of them stops
    the other and is re-raised before any garbage is computed.
    """
    start = time.time()
    board = board if board is not None else ProgressBoard(enabled=False)
    cancel = threading.Event()
    index_progress = board.add(f"{ICONS['index']} Index")
    shard_progress = board.add(f"{ICONS['chunk']} Shards", SHARD_COUNT)

    with futures.ThreadPoolExecutor(max_workers=2) as pool:
        live_fut = pool.submit(
            scan_indexes,
            config.base_dir,
            config.metadata_workers,
            cancel,
            index_progress,
            rng,
        )
        blobs_fut = pool.submit(
            enumerate_blobs,
            config.base_dir,
            config.blobs_workers,
            cancel,
            shard_progress,
        )
        try:
            done, _ = futures.wait([live_fut, blobs_fut], return_when=futures.FIRST_EXCEPTION)
        except BaseException:
            cancel.set()
            raise
        for fut in (live_fut, blobs_fut):
            if fut in done and fut.exception() is not None:
                cancel.set()
                raise fut.exception()  # type: ignore[misc]
        live = live_fut.result()
        blobs = blobs_fut.result()

    board.finish()
    garbage = compute_garbage(config.base_dir, live, blobs)
    return ScanResult(live, blobs, garbage, time.time() - start)


# =============================================================================
# Sweep phase: deletion
# =============================================================================

class DeleteResult(NamedTuple):
    """Counters of one deletion batch."""
    removed: int
    missing: int
    failed: int
    elapsed: float


def delete_files(
    paths: Sequence[str],
    workers: int,
    progress: Optional[ProgressCounter] = None,
    cancel: Optional[threading.Event] = None,
) -> DeleteResult:
    """Remove every listed file, continuing past individual failures.

    Files that are already gone are counted as missing; any other OSError is
    reported and counted as failed. Setting ``cancel`` stops the batch before
    the next removal; deletion errors themselves never set it.
    """
    start = time.time()
    cancel = cancel if cancel is not None else threading.Event()
    totals = {"removed": 0, "missing": 0, "failed": 0}
    totals_lock = threading.Lock()

    def _worker(first: int, last: int) -> None:
        removed = missing = failed = 0
        for path in paths[first:last]:
            if cancel.is_set():
                break
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                missing += 1
            except OSError as exc:
                failed += 1
                sys.stderr.write(
                    f"\r\033[K{ICONS['warning']} Warning: unable to delete {path}: {exc}\n"
                )
            if progress is not None:
                progress.increment()
        with totals_lock:
            totals["removed"] += removed
            totals["missing"] += missing
            totals["failed"] += failed

    run_partitioned(len(paths), workers, _worker, cancel)
    return DeleteResult(
        totals["removed"],
        totals["missing"],
        totals["failed"],
        time.time() - start,
    )


def confirm_delete(count: int) -> bool:
    """Ask the operator before removing ``count`` chunk files."""
    answer = input(f"Delete {count} chunk files now? [y/N]: ").strip().lower()
    return answer.startswith("y")


# =============================================================================
# Run driver
# =============================================================================

def run(config: GCConfig, show_progress: bool = True) -> int:
    """Scan, report and optionally delete. Returns a POSIX exit code."""
    print(f"{ICONS['folder']} Path to datastore: {config.base_dir}")
    print(
        f"{ICONS['threads']} Workers: metadata {config.metadata_workers}, "
        f"blobs {config.blobs_workers}, delete {config.delete_workers}"
    )

    board = ProgressBoard(enabled=show_progress)
    try:
        result = collect_garbage(config, board)
    except ScanError as exc:
        board.finish()
        sys.stderr.write(f"{ICONS['error']} Error: scan aborted, {exc}\n")
        sys.stderr.write("No report written and nothing deleted.\n")
        return 1

    print(
        f"{ICONS['total']} Collecting finished: live digests {len(result.live)}, "
        f"blobs {len(result.blobs)}"
    )
    print(f"{ICONS['garbage']} Garbage found: {len(result.garbage)}")
    try:
        report_path = write_report(result.garbage, config.report_dir)
    except OSError as exc:
        sys.stderr.write(f"{ICONS['error']} Error: unable to write report: {exc}\n")
        sys.stderr.write("Nothing deleted.\n")
        return 1
    print(f"{ICONS['save']} File list written to {report_path}")
    print(f"{ICONS['timer']} Scan duration: {format_elapsed(result.elapsed)}")

    if not config.delete:
        return 0
    if not result.garbage:
        print(f"{ICONS['info']} Nothing to delete.")
        return 0
    if not config.assume_yes and not confirm_delete(len(result.garbage)):
        print("Deletion skipped.")
        return 0

    board = ProgressBoard(enabled=show_progress)
    counter = board.add(f"{ICONS['garbage']} Delete", len(result.garbage))
    deleted = delete_files(result.garbage, config.delete_workers, counter)
    board.finish()
    print(
        f"{ICONS['total']} Deleted {deleted.removed} files "
        f"(already missing: {deleted.missing}, failed: {deleted.failed})"
    )
    print(f"{ICONS['timer']} Delete duration: {format_elapsed(deleted.elapsed)}")
    if deleted.failed:
        print(f"{ICONS['warning']} {deleted.failed} files could not be deleted, see warnings above.")
    return 0


def _positive_or_default(value: int, name: str) -> int:
    if value > 0:
        return value
    sys.stderr.write(
        f"{ICONS['error']} Error: invalid {name} ({value}). "
        f"Using default value {DEFAULT_WORKERS}.\n"
    )
    return DEFAULT_WORKERS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Find PBS chunks that are not referenced by any index file, write "
            "them to a report and optionally delete them."
        )
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show program version and exit.",
    )
    parser.add_argument(
        "--base-dir",
        dest="base_dir",
        help="Datastore root containing vm/, ct/, ns/ and .chunks/.",
    )
    parser.add_argument(
        "--metadata-workers",
        dest="metadata_workers",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Workers reading index files (default {DEFAULT_WORKERS}).",
    )
    parser.add_argument(
        "--blobs-workers",
        dest="blobs_workers",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Workers listing chunk shards (default {DEFAULT_WORKERS}).",
    )
    parser.add_argument(
        "--delete-workers",
        dest="delete_workers",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Workers removing garbage chunks (default {DEFAULT_WORKERS}).",
    )
    parser.add_argument(
        "--delete",
        action="store_true",
        help="Actually delete the garbage chunks after writing the report.",
    )
    parser.add_argument(
        "--yes",
        dest="assume_yes",
        action="store_true",
        help="Do not ask for confirmation before deleting.",
    )
    parser.add_argument(
        "--report-dir",
        dest="report_dir",
        default=".",
        help="Directory for the delete-<timestamp>.txt report (default: cwd).",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable the in-place progress line.",
    )
    parser.add_argument(
        "--no-emoji",
        action="store_true",
        help="Disable emoji characters in console output.",
    )
    # Backward compatibility aliases
    parser.add_argument("--baseDir", dest="base_dir", help=argparse.SUPPRESS)
    parser.add_argument("--metadataWorker", dest="metadata_workers", type=int, help=argparse.SUPPRESS)
    parser.add_argument("--blobsWorker", dest="blobs_workers", type=int, help=argparse.SUPPRESS)
    parser.add_argument("--deleteWorker", dest="delete_workers", type=int, help=argparse.SUPPRESS)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entrypoint: parse args, build the config and run the collector."""
    parser = build_parser()
    args = parser.parse_args(argv)

    _set_emoji_mode(not args.no_emoji)

    if not args.base_dir:
        parser.error("--base-dir is required.")

    base_dir = Path(args.base_dir).resolve()
    if not base_dir.is_dir():
        sys.stderr.write(
            f"{ICONS['error']} Error: datastore path is not a directory → {base_dir}\n"
        )
        return 1

    report_dir = Path(args.report_dir).resolve()
    if not report_dir.is_dir():
        sys.stderr.write(
            f"{ICONS['error']} Error: report directory does not exist → {report_dir}\n"
        )
        return 1

    config = GCConfig(
        base_dir=str(base_dir),
        metadata_workers=_positive_or_default(args.metadata_workers, "metadata worker count"),
        blobs_workers=_positive_or_default(args.blobs_workers, "blobs worker count"),
        delete_workers=_positive_or_default(args.delete_workers, "delete worker count"),
        delete=args.delete,
        assume_yes=args.assume_yes,
        report_dir=str(report_dir),
    )
    show_progress = not args.no_progress and sys.stdout.isatty()
    try:
        return run(config, show_progress=show_progress)
    except KeyboardInterrupt:
        print("\nAborted.")
        return 130


# =============================================================================
# Program entrypoint
# =============================================================================

if __name__ == "__main__":
    signal.signal(signal.SIGINT, lambda s, f: sys.exit(130))
    sys.exit(main())
