"""
Run a per-genome analysis command over every FASTA file in a directory.

Each input gets its own output directory (<output_root>/<input file name>).
An existing output directory means "done" and is skipped when skip_existing is
set. A failing item (non-zero exit, no output directory written, or an output
path that cannot be cleared) is cleaned up, recorded and the run continues; the
summary lists everything that needs a re-run.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

DEFAULT_PATTERNS = ("*.fna", "*.fna.gz", "*.fa", "*.fa.gz")
DEFAULT_COMMAND = ("smorf", "single", "{input}", "-o", "{output}")
COMPLETE_MARKER = ".genomebatch_done"

logger = logging.getLogger("genomebatch.items")


class InputDirectoryError(RuntimeError):
    pass


class NoInputFilesError(RuntimeError):
    pass


class ItemStatus(str, Enum):
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemResult:
    name: str
    input_path: Path
    output_dir: Path
    status: ItemStatus
    returncode: Optional[int] = None
    reason: str = ""


@dataclass
class RunSummary:
    output_root: Path
    results: List[ItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    def count(self, status: ItemStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def failed(self) -> List[str]:
        return [r.name for r in self.results if r.status is ItemStatus.FAILED]


class SafeFormatDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


def build_command(template: Sequence[str], input_path: Path, output_dir: Path) -> List[str]:
    values = {
        "input": str(input_path),
        "output": str(output_dir),
        "name": input_path.name,
    }
    return [part.format_map(SafeFormatDict(values)) for part in template]


def collect_inputs(input_dir: Path, patterns: Iterable[str] = DEFAULT_PATTERNS) -> List[Path]:
    if not input_dir.is_dir():
        raise InputDirectoryError(f"input directory '{input_dir}' does not exist.")
    patterns = list(patterns)
    found = {p for pattern in patterns for p in input_dir.glob(pattern) if p.is_file()}
    if not found:
        raise NoInputFilesError(f"no files matching {', '.join(patterns)} found in '{input_dir}'.")
    return sorted(found)


def output_dir_for(input_path: Path, output_root: Path) -> Path:
    return output_root / input_path.name


def is_complete(output_dir: Path, require_marker: bool = False) -> bool:
    if not output_dir.is_dir():
        return False
    if require_marker:
        return (output_dir / COMPLETE_MARKER).exists()
    return True


def remove_output(out_dir: Path) -> None:
    if out_dir.is_dir() and not out_dir.is_symlink():
        logger.info("Removing existing output directory: %s", out_dir)
        shutil.rmtree(out_dir)
    elif out_dir.exists() or out_dir.is_symlink():
        logger.info("Removing stray file at output path: %s", out_dir)
        out_dir.unlink()


def process_item(
    input_path: Path,
    output_root: Path,
    command: Sequence[str] = DEFAULT_COMMAND,
    skip_existing: bool = True,
    require_marker: bool = False,
) -> ItemResult:
    name = input_path.name
    out_dir = output_dir_for(input_path, output_root)

    if skip_existing and is_complete(out_dir, require_marker):
        logger.info("Skipping %s (output exists: %s)", name, out_dir)
        return ItemResult(name=name, input_path=input_path, output_dir=out_dir, status=ItemStatus.SKIPPED)

    try:
        remove_output(out_dir)
    except OSError as exc:
        logger.error("Could not clear %s for %s: %s", out_dir, name, exc)
        return ItemResult(
            name=name,
            input_path=input_path,
            output_dir=out_dir,
            status=ItemStatus.FAILED,
            reason=f"could not clear output: {exc}",
        )

    argv = build_command(command, input_path, out_dir)
    logger.info("Running %s on %s -> %s", argv[0], name, out_dir)
    try:
        result = subprocess.run(argv, check=False)
        returncode: Optional[int] = result.returncode
        reason = f"exit status {returncode}" if returncode else ""
    except OSError as exc:
        returncode = None
        reason = f"could not start {argv[0]}: {exc}"

    if returncode == 0 and not out_dir.is_dir():
        reason = f"{argv[0]} exited 0 but wrote no output directory"
        logger.warning("%s on %s: %s", argv[0], name, reason)
        return ItemResult(
            name=name,
            input_path=input_path,
            output_dir=out_dir,
            status=ItemStatus.FAILED,
            returncode=returncode,
            reason=reason,
        )

    if returncode != 0:
        logger.error("%s failed on %s (%s)", argv[0], name, reason)
        try:
            remove_output(out_dir)
        except OSError as exc:
            logger.error("Could not remove partial output %s: %s", out_dir, exc)
            reason = f"{reason}; partial output left at {out_dir}"
        return ItemResult(
            name=name,
            input_path=input_path,
            output_dir=out_dir,
            status=ItemStatus.FAILED,
            returncode=returncode,
            reason=reason,
        )

    (out_dir / COMPLETE_MARKER).touch()
    return ItemResult(name=name, input_path=input_path, output_dir=out_dir, status=ItemStatus.DONE, returncode=0)


def run_items(
    inputs: List[Path],
    output_root: Path,
    command: Sequence[str] = DEFAULT_COMMAND,
    skip_existing: bool = True,
    require_marker: bool = False,
    progress_callback: Optional[Callable[[ItemResult, int, int], None]] = None,
) -> RunSummary:
    output_root.mkdir(parents=True, exist_ok=True)
    summary = RunSummary(output_root=output_root)
    total = len(inputs)
    for idx, input_path in enumerate(inputs, 1):
        logger.info("[%d/%d] %s", idx, total, input_path.name)
        result = process_item(
            input_path,
            output_root,
            command=command,
            skip_existing=skip_existing,
            require_marker=require_marker,
        )
        summary.results.append(result)
        if progress_callback:
            progress_callback(result, idx, total)
    return summary


def summary_lines(summary: RunSummary) -> List[str]:
    lines = [
        f"Completed runs for {summary.total} genome(s). Outputs stored under '{summary.output_root}'."
    ]
    failed = summary.failed
    if failed:
        lines.append(f"{len(failed)} genome(s) failed:")
        lines.extend(f"  - {name}" for name in failed)
        lines.append(
            "Re-run with skip-existing enabled to resume only the unfinished or failed genomes."
        )
    return lines


def status_counts(summary: RunSummary) -> Dict[str, int]:
    return {status.value: summary.count(status) for status in ItemStatus}
