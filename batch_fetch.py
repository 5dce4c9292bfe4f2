"""
Resumable batch download of NCBI genome packages.

Per batch:
    1. skip when every accession already has an extracted *genomic.fna* file
    2. run `datasets download genome accession ...` with bounded retries
    3. extract genomic FASTA members from the zip into the output directory
    4. append new (accession, zipfile, filename) rows to the manifest

Failed batches are appended to a failure list and the run moves on.
"""

import csv
import dataclasses
import fnmatch
import glob
import logging
import os
import shutil
import subprocess
import time
import zipfile
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Set, Tuple

from assembly_resolver import Batch

MANIFEST_NAME = "manifest.csv"
FAILED_NAME = "failed_batches.txt"
MANIFEST_FIELDS = ["accession", "zipfile", "extracted_filename", "size_bytes"]
MARKER_TOKEN = "genomic.fna"
PARTIAL_SUFFIX = ".part"
# compressed variant first, then plain
MEMBER_PATTERNS = (
    "ncbi_dataset/data/*/*_genomic.fna.gz",
    "ncbi_dataset/data/*/*_genomic.fna",
)

logger = logging.getLogger("genomebatch.fetch")


class FetchStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class FetchOutcome:
    batch: Batch
    status: FetchStatus
    archive: Optional[Path] = None
    attempts: int = 0
    recorded: int = 0
    reason: str = ""


@dataclass
class FetchSettings:
    work_dir: Path
    out_dir: Path
    datasets_bin: str = "datasets"
    max_retries: int = 3
    retry_delay_sec: float = 5.0
    sleep_between_batches: float = 1.0
    keep_archives: bool = False
    archive_prefix: str = "batch"

    def archive_path(self, batch: Batch) -> Path:
        return self.work_dir / f"{self.archive_prefix}_{batch.label}.zip"


@dataclass(frozen=True)
class ManifestEntry:
    accession: str
    archive: str
    filename: str
    size_bytes: int

    @property
    def key(self) -> Tuple[str, str, str]:
        return self.accession, self.archive, self.filename


class RunStore:
    """
    Append-only manifest and failure list living in the work directory.

    Only append_manifest() and record_failure() write, and both refuse to write
    a row that is already present, so re-running over the same archives is safe.
    One writer at a time is assumed.
    """

    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir)
        self.manifest_path = self.work_dir / MANIFEST_NAME
        self.failed_path = self.work_dir / FAILED_NAME
        self._manifest_keys: Optional[Set[Tuple[str, str, str]]] = None
        self._failed_lines: Optional[Set[str]] = None

    def manifest_entries(self) -> List[ManifestEntry]:
        if not self.manifest_path.exists():
            return []
        entries = []
        with self.manifest_path.open("r", newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                if not row.get("accession"):
                    continue
                try:
                    size = int(row.get("size_bytes") or 0)
                except ValueError:
                    size = 0
                entries.append(
                    ManifestEntry(
                        accession=row["accession"],
                        archive=row.get("zipfile") or "",
                        filename=row.get("extracted_filename") or "",
                        size_bytes=size,
                    )
                )
        return entries

    def failed_batches(self) -> List[Batch]:
        if not self.failed_path.exists():
            return []
        batches: List[Batch] = []
        seen = set()
        with self.failed_path.open("r", encoding="utf-8") as f:
            for raw in f:
                line = raw.rstrip("\r\n")
                if not line.strip() or line in seen:
                    continue
                seen.add(line)
                label, _, accs = line.partition("\t")
                label = label.strip()
                index = int(label) if label.isdigit() else len(batches) + 1
                batches.append(Batch(index=index, label=label, accessions=tuple(accs.split())))
        return batches

    def append_manifest(self, entry: ManifestEntry) -> bool:
        if self._manifest_keys is None:
            self._manifest_keys = {e.key for e in self.manifest_entries()}
        if entry.key in self._manifest_keys:
            return False

        self.work_dir.mkdir(parents=True, exist_ok=True)
        write_header = not self.manifest_path.exists() or self.manifest_path.stat().st_size == 0
        with self.manifest_path.open("a", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            if write_header:
                writer.writerow(MANIFEST_FIELDS)
            writer.writerow([entry.accession, entry.archive, entry.filename, entry.size_bytes])
        self._manifest_keys.add(entry.key)
        return True

    def record_failure(self, batch: Batch) -> bool:
        line = f"{batch.label}\t{' '.join(batch.accessions)}"
        if self._failed_lines is None:
            self._failed_lines = set()
            if self.failed_path.exists():
                with self.failed_path.open("r", encoding="utf-8") as f:
                    self._failed_lines = {raw.rstrip("\r\n") for raw in f}
        if line in self._failed_lines:
            return False

        self.work_dir.mkdir(parents=True, exist_ok=True)
        with self.failed_path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
        self._failed_lines.add(line)
        return True


def find_extracted(out_dir: Path, accession: str) -> List[Path]:
    pattern = f"{glob.escape(accession)}_*{MARKER_TOKEN}*"
    return sorted(
        p for p in out_dir.glob(pattern)
        if p.is_file() and not p.name.endswith(PARTIAL_SUFFIX)
    )


def batch_is_complete(batch: Batch, out_dir: Path) -> bool:
    return all(find_extracted(out_dir, acc) for acc in batch.accessions)


def run_fetch_tool(accessions: List[str], archive: Path, datasets_bin: str = "datasets") -> bool:
    cmd = [datasets_bin, "download", "genome", "accession", *accessions, "--filename", str(archive)]
    try:
        result = subprocess.run(cmd, check=False)
    except OSError as exc:
        logger.error("could not start %s: %s", datasets_bin, exc)
        return False
    if result.returncode != 0:
        return False
    if not archive.exists():
        logger.warning("%s exited 0 but wrote no archive at %s", datasets_bin, archive)
        return False
    return True


def fetch_batch(batch: Batch, settings: FetchSettings) -> FetchOutcome:
    if batch_is_complete(batch, settings.out_dir):
        logger.info("Batch %s: all accessions already extracted, skipping.", batch.label)
        return FetchOutcome(batch=batch, status=FetchStatus.SKIPPED)

    archive = settings.archive_path(batch)
    archive.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(1, settings.max_retries + 1):
        if archive.exists():
            logger.warning("Batch %s: removing stale archive %s", batch.label, archive)
            archive.unlink()
        logger.info(
            "Batch %s (attempt %d): downloading %d accessions -> %s",
            batch.label, attempt, len(batch), archive,
        )
        if run_fetch_tool(list(batch.accessions), archive, settings.datasets_bin):
            return FetchOutcome(batch=batch, status=FetchStatus.SUCCESS, archive=archive, attempts=attempt)
        logger.warning("datasets download failed for batch %s (attempt %d).", batch.label, attempt)
        if attempt < settings.max_retries:
            time.sleep(settings.retry_delay_sec)

    logger.error("Batch %s failed after %d attempts. Recording for retry.", batch.label, settings.max_retries)
    return FetchOutcome(
        batch=batch,
        status=FetchStatus.FAILED,
        attempts=settings.max_retries,
        reason=f"download failed after {settings.max_retries} attempts",
    )


def extract_members(archive: Path, pattern: str, dest: Path) -> List[Path]:
    """Extract members matching pattern into dest, dropping their directories (like `unzip -j -o`)."""
    dest.mkdir(parents=True, exist_ok=True)
    extracted: List[Path] = []
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            if info.is_dir() or not fnmatch.fnmatchcase(info.filename, pattern):
                continue
            target = dest / PurePosixPath(info.filename).name
            tmp = target.with_name(target.name + PARTIAL_SUFFIX)
            try:
                with zf.open(info) as src, tmp.open("wb") as dst:
                    shutil.copyfileobj(src, dst)
                os.replace(tmp, target)
            finally:
                if tmp.exists():
                    tmp.unlink()
            extracted.append(target)
    return extracted


def record_batch(batch: Batch, archive: Path, settings: FetchSettings, store: RunStore) -> List[ManifestEntry]:
    logger.info("Batch %s: extracting genomic FASTA files...", batch.label)
    for pattern in MEMBER_PATTERNS:
        extracted = extract_members(archive, pattern, settings.out_dir)
        if extracted:
            logger.info("Batch %s: extracted %d files matching %s", batch.label, len(extracted), pattern)
        else:
            logger.debug("Batch %s: no members match %s", batch.label, pattern)

    added: List[ManifestEntry] = []
    for accession in batch.accessions:
        for path in find_extracted(settings.out_dir, accession):
            entry = ManifestEntry(
                accession=accession,
                archive=str(archive),
                filename=path.name,
                size_bytes=path.stat().st_size,
            )
            if store.append_manifest(entry):
                added.append(entry)

    if not settings.keep_archives and archive.exists():
        archive.unlink()
    return added


def process_batch(batch: Batch, settings: FetchSettings, store: RunStore) -> FetchOutcome:
    outcome = fetch_batch(batch, settings)
    if outcome.status is FetchStatus.SKIPPED:
        return outcome

    if outcome.status is FetchStatus.SUCCESS:
        try:
            added = record_batch(batch, outcome.archive, settings, store)
            outcome = dataclasses.replace(outcome, recorded=len(added))
        except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
            logger.error("Batch %s: unreadable archive %s: %s", batch.label, outcome.archive, exc)
            outcome = dataclasses.replace(outcome, status=FetchStatus.FAILED, reason=f"bad archive: {exc}")
        except OSError as exc:
            logger.error("Batch %s: extraction from %s failed: %s", batch.label, outcome.archive, exc)
            outcome = dataclasses.replace(outcome, status=FetchStatus.FAILED, reason=f"extraction failed: {exc}")

    if outcome.status is FetchStatus.FAILED:
        store.record_failure(batch)

    time.sleep(settings.sleep_between_batches)
    return outcome


def run_batches(
    batches: List[Batch],
    settings: FetchSettings,
    store: RunStore,
    progress_callback: Optional[Callable[[FetchOutcome, int, int], None]] = None,
) -> List[FetchOutcome]:
    settings.work_dir.mkdir(parents=True, exist_ok=True)
    settings.out_dir.mkdir(parents=True, exist_ok=True)

    total = len(batches)
    outcomes: List[FetchOutcome] = []
    for idx, batch in enumerate(batches, 1):
        outcome = process_batch(batch, settings, store)
        outcomes.append(outcome)
        if progress_callback:
            progress_callback(outcome, idx, total)

    failed = [o.batch.label for o in outcomes if o.status is FetchStatus.FAILED]
    logger.info("All batches processed.")
    if failed:
        logger.warning("Some batches failed (%s). See: %s", ", ".join(failed), store.failed_path)
    else:
        logger.info("No failed batches.")
    return outcomes
