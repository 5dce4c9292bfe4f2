import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import typer
from Bio import Entrez
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from assembly_resolver import (
    DEFAULT_DB,
    DEFAULT_RETMAX,
    DEFAULT_UID_CHUNK_SIZE,
    Batch,
    NoAccessionsError,
    NoResultsError,
    partition_batches,
    read_accessions,
    resolve_accessions,
    write_accessions,
)
from batch_fetch import FetchOutcome, FetchSettings, FetchStatus, RunStore, run_batches
from item_runner import (
    DEFAULT_COMMAND,
    DEFAULT_PATTERNS,
    InputDirectoryError,
    ItemResult,
    ItemStatus,
    NoInputFilesError,
    collect_inputs,
    run_items,
    status_counts,
    summary_lines,
)

try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib

app = typer.Typer(
    add_completion=False,
    help="genomebatch - resumable NCBI assembly download and per-genome analysis.",
)
console = Console()

LOGGER_NAME = "genomebatch"
RUN_LOGGER_NAME = "genomebatch.run"
CONFIG_SECTIONS = ("ncbi", "download", "analysis")
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

DEFAULT_QUERY = "marine"
DEFAULT_BATCH_SIZE = 50
DEFAULT_WORK_DIR = "./tmp_datasets"
DEFAULT_OUT_DIR = "./genome_fna"
DEFAULT_OUTPUT_ROOT = "./analysis_output"
ACCESSIONS_NAME = "accessions.txt"

EXIT_FATAL = 1
EXIT_PARTIAL = 2


def print_header(subtitle: str) -> None:
    console.print(
        Panel(
            "NCBI assembly batch download + per-genome analysis",
            title="genomebatch",
            subtitle=subtitle,
            expand=False,
        )
    )


def render_run_table(title: str, rows: Dict[str, object]) -> None:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Item")
    table.add_column("Value", overflow="fold")
    for key, value in rows.items():
        table.add_row(key, str(value))
    console.print(table)


def render_fetch_result_table(outcomes: List[FetchOutcome], store: RunStore, log_path: Path) -> None:
    table = Table(title="Result Summary", show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Batches", str(len(outcomes)))
    for state in FetchStatus:
        table.add_row(f"Batches {state.value}", str(sum(1 for o in outcomes if o.status is state)))
    table.add_row("Manifest rows added", str(sum(o.recorded for o in outcomes)))
    table.add_row("Manifest", str(store.manifest_path))
    table.add_row("Failed batches", str(store.failed_path))
    table.add_row("Log", str(log_path))
    console.print(table)


def render_batch_plan(batches: List[Batch], settings: FetchSettings) -> None:
    table = Table(title="Batch Plan", show_header=True, header_style="bold")
    table.add_column("Batch")
    table.add_column("Accessions")
    table.add_column("First")
    table.add_column("Last")
    table.add_column("Archive", overflow="fold")
    for batch in batches:
        table.add_row(
            batch.label,
            str(len(batch)),
            batch.accessions[0],
            batch.accessions[-1],
            str(settings.archive_path(batch)),
        )
    console.print(table)


def load_config(path: Optional[Path]) -> Dict:
    if path is None:
        return {}
    if not path.exists():
        raise typer.BadParameter(f"Config file not found: {path}")
    with path.open("rb") as f:
        data = tomllib.load(f)
    for name in CONFIG_SECTIONS:
        section = data.get(name)
        if section is not None and not isinstance(section, dict):
            raise typer.BadParameter(f"[{name}] must be a table (dict).")
    return data


def config_section(cfg: Dict, name: str) -> Dict:
    return cfg.get(name) or {}


def pick(cli_value, env_name: Optional[str], section: Dict, key: str, default):
    """Resolve one setting: command line, then environment, then config file, then default."""
    if cli_value is not None:
        return cli_value
    if env_name:
        env_value = os.environ.get(env_name)
        if env_value is not None and env_value.strip() != "":
            return env_value.strip()
    value = section.get(key)
    return default if value is None else value


def as_positive_int(value, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise typer.BadParameter(f"{name} must be an integer.") from exc
    if number < 1:
        raise typer.BadParameter(f"{name} must be >= 1.")
    return number


def as_non_negative_float(value, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise typer.BadParameter(f"{name} must be a number.") from exc
    if number < 0:
        raise typer.BadParameter(f"{name} must be >= 0.")
    return number


def as_bool(value, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise typer.BadParameter(f"{name} must be true or false.")


def as_str_list(value, name: str) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)) and value and all(isinstance(v, str) for v in value):
        return list(value)
    raise typer.BadParameter(f"{name} must be a string or non-empty list of strings.")


def setup_entrez(ncbi_cfg: Dict) -> None:
    email = ncbi_cfg.get("email") or os.environ.get("NCBI_EMAIL")
    api_key = ncbi_cfg.get("api_key") or os.environ.get("NCBI_API_KEY")

    if not email:
        console.print("[yellow]WARNING:[/yellow] NCBI email is not set. Set ncbi.email or NCBI_EMAIL.")
    Entrez.email = email or ""

    if api_key:
        Entrez.api_key = api_key
    if ncbi_cfg.get("max_tries") is not None:
        Entrez.max_tries = as_positive_int(ncbi_cfg["max_tries"], "ncbi.max_tries")
    if ncbi_cfg.get("sleep_between_tries") is not None:
        Entrez.sleep_between_tries = as_non_negative_float(
            ncbi_cfg["sleep_between_tries"], "ncbi.sleep_between_tries"
        )


def default_delay(ncbi_cfg: Dict) -> float:
    delay = ncbi_cfg.get("delay_sec")
    if delay is not None:
        return as_non_negative_float(delay, "ncbi.delay_sec")
    if getattr(Entrez, "api_key", None):
        return 0.11
    return 0.34


def build_fetch_settings(
    download_cfg: Dict,
    work_dir: Optional[Path] = None,
    out_dir: Optional[Path] = None,
    keep_archives: Optional[bool] = None,
    max_retries: Optional[int] = None,
    sleep_between: Optional[float] = None,
) -> FetchSettings:
    return FetchSettings(
        work_dir=Path(pick(work_dir, "WORK_DIR", download_cfg, "work_dir", DEFAULT_WORK_DIR)),
        out_dir=Path(pick(out_dir, "OUTDIR", download_cfg, "out_dir", DEFAULT_OUT_DIR)),
        datasets_bin=str(pick(None, None, download_cfg, "datasets_bin", "datasets")),
        max_retries=as_positive_int(
            pick(max_retries, "MAX_RETRIES", download_cfg, "max_retries", 3), "max_retries"
        ),
        retry_delay_sec=as_non_negative_float(
            pick(None, None, download_cfg, "retry_delay_sec", 5), "download.retry_delay_sec"
        ),
        sleep_between_batches=as_non_negative_float(
            pick(sleep_between, "SLEEP_BETWEEN_DOWNLOADS", download_cfg, "sleep_between_batches", 1),
            "sleep_between_batches",
        ),
        keep_archives=as_bool(
            pick(keep_archives, "KEEP_ZIP", download_cfg, "keep_archives", False), "keep_archives"
        ),
        archive_prefix=str(pick(None, None, download_cfg, "archive_prefix", "batch")),
    )


def require_tool(name: str) -> None:
    if shutil.which(name) is None:
        console.print(f"[red]ERROR:[/red] required command '{name}' not found in PATH.")
        raise typer.Exit(code=EXIT_FATAL)


class _ConsoleRecordFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.name != RUN_LOGGER_NAME


def setup_run_logger(log_path: Path) -> logging.Logger:
    """
    Attach a per-run log file and a rich console handler to the genomebatch loggers.

    Messages from the returned run logger only go to the file; messages from the
    stage modules go to both.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    base = logging.getLogger(LOGGER_NAME)
    base.setLevel(logging.INFO)
    base.propagate = False

    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    base.addHandler(file_handler)

    console_handler = RichHandler(console=console, show_path=False, markup=False)
    console_handler.addFilter(_ConsoleRecordFilter())
    base.addHandler(console_handler)
    return logging.getLogger(RUN_LOGGER_NAME)


def close_run_logger() -> None:
    base = logging.getLogger(LOGGER_NAME)
    for handler in list(base.handlers):
        handler.flush()
        handler.close()
        base.removeHandler(handler)


def run_log_path(directory: Path, stage: str) -> Path:
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return directory / f"{stage}_{stamp}.log"


def make_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        disable=not console.is_terminal,
    )


def fetch_with_progress(batches: List[Batch], settings: FetchSettings, store: RunStore) -> List[FetchOutcome]:
    progress = make_progress()
    with progress:
        task_id = progress.add_task("batches", total=len(batches))

        def advance(outcome: FetchOutcome, idx: int, total: int) -> None:
            progress.update(task_id, advance=1, description=f"batch {outcome.batch.label} {outcome.status.value}")

        return run_batches(batches, settings, store, progress_callback=advance)


def finish_fetch_run(outcomes: List[FetchOutcome], store: RunStore, log_path: Path) -> None:
    render_fetch_result_table(outcomes, store, log_path)
    failed = [o.batch.label for o in outcomes if o.status is FetchStatus.FAILED]
    if failed:
        console.print(
            f"[yellow]WARNING:[/yellow] {len(failed)} batch(es) failed: {', '.join(failed)}. "
            f"Run 'genomebatch retry-failed' to fetch only these. See: {store.failed_path}"
        )
        raise typer.Exit(code=EXIT_PARTIAL)
    console.print("No failed batches.")


@app.command()
def download(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to TOML config file."),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="NCBI Assembly search query."),
    accessions: Optional[Path] = typer.Option(
        None,
        "--accessions",
        help="Accession list (one per line) to use instead of searching.",
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Accessions per download."),
    uid_chunk_size: Optional[int] = typer.Option(None, "--uid-chunk-size", help="UIDs per esummary call."),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="Directory for archives, manifest and logs."),
    out_dir: Optional[Path] = typer.Option(None, "--out-dir", "-o", help="Directory for extracted FASTA files."),
    keep_archives: Optional[bool] = typer.Option(
        None, "--keep-archives/--no-keep-archives", help="Keep downloaded zip archives."
    ),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Download attempts per batch."),
    sleep_between: Optional[float] = typer.Option(
        None, "--sleep-between", help="Seconds to wait after each downloaded batch."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Resolve and print the batch plan, download nothing."),
):
    """
    Download every assembly matching a query and extract its *_genomic.fna files.

    Examples:
      genomebatch download -q "marine" -b 50
      genomebatch download -q "marine AND (txid2[Organism:exp] OR txid2157[Organism:exp])"
      genomebatch download --accessions tmp_datasets/accessions.txt --dry-run
    """
    cfg = load_config(config)
    ncbi_cfg = config_section(cfg, "ncbi")
    download_cfg = config_section(cfg, "download")

    settings = build_fetch_settings(
        download_cfg,
        work_dir=work_dir,
        out_dir=out_dir,
        keep_archives=keep_archives,
        max_retries=max_retries,
        sleep_between=sleep_between,
    )
    query_value = str(pick(query, "GENOMEBATCH_QUERY", download_cfg, "query", DEFAULT_QUERY))
    batch_size_value = as_positive_int(
        pick(batch_size, "BATCH_SIZE", download_cfg, "batch_size", DEFAULT_BATCH_SIZE), "batch_size"
    )
    uid_chunk_value = as_positive_int(
        pick(uid_chunk_size, "UID_CHUNK_SIZE", ncbi_cfg, "uid_chunk_size", DEFAULT_UID_CHUNK_SIZE),
        "uid_chunk_size",
    )
    db = str(ncbi_cfg.get("db") or DEFAULT_DB)
    retmax = as_positive_int(ncbi_cfg.get("retmax", DEFAULT_RETMAX), "ncbi.retmax")
    if accessions and not accessions.exists():
        raise typer.BadParameter(f"--accessions not found: {accessions}")

    if not accessions:
        setup_entrez(ncbi_cfg)
    if not dry_run:
        require_tool(settings.datasets_bin)

    settings.work_dir.mkdir(parents=True, exist_ok=True)
    settings.out_dir.mkdir(parents=True, exist_ok=True)

    print_header("download")
    render_run_table(
        "Run Summary",
        {
            "Query": f"from file {accessions}" if accessions else query_value,
            "Batch size": batch_size_value,
            "Work dir": settings.work_dir,
            "Output dir": settings.out_dir,
            "Max retries": settings.max_retries,
            "Keep archives": str(settings.keep_archives).lower(),
            "Dry run": str(dry_run).lower(),
        },
    )

    log_path = run_log_path(settings.work_dir, "download")
    store = RunStore(settings.work_dir)
    run_logger = setup_run_logger(log_path)
    try:
        run_logger.info(f"# started: {datetime.now().isoformat()}")
        run_logger.info(f"# config: {config}" if config else "# config: none")
        run_logger.info(f"# query: {query_value}")
        run_logger.info(f"# accessions_file: {accessions}" if accessions else "# accessions_file: none")
        run_logger.info(f"# batch_size: {batch_size_value}")
        run_logger.info(f"# uid_chunk_size: {uid_chunk_value}")
        run_logger.info(f"# work_dir: {settings.work_dir}")
        run_logger.info(f"# out_dir: {settings.out_dir}")
        run_logger.info(f"# max_retries: {settings.max_retries}")
        run_logger.info(f"# keep_archives: {settings.keep_archives}")

        try:
            if accessions:
                accession_list = read_accessions(accessions)
                if not accession_list:
                    raise NoAccessionsError(f"no accessions found in {accessions}")
            else:
                accession_list = resolve_accessions(
                    query_value,
                    db=db,
                    retmax=retmax,
                    chunk_size=uid_chunk_value,
                    delay_sec=default_delay(ncbi_cfg),
                )
                write_accessions(settings.work_dir / ACCESSIONS_NAME, accession_list)
        except (NoResultsError, NoAccessionsError) as exc:
            run_logger.info(f"# aborted: {exc}")
            console.print(f"[red]ERROR:[/red] {exc}")
            raise typer.Exit(code=EXIT_FATAL)

        batches = partition_batches(accession_list, batch_size_value)
        run_logger.info(f"# accessions: {len(accession_list)}")
        run_logger.info(f"# batches: {len(batches)}")

        if dry_run:
            render_batch_plan(batches, settings)
            return

        outcomes = fetch_with_progress(batches, settings, store)
        run_logger.info(f"# finished: {datetime.now().isoformat()}")
    finally:
        close_run_logger()

    finish_fetch_run(outcomes, store, log_path)


@app.command("retry-failed")
def retry_failed(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to TOML config file."),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="Directory holding failed_batches.txt."),
    out_dir: Optional[Path] = typer.Option(None, "--out-dir", "-o", help="Directory for extracted FASTA files."),
    keep_archives: Optional[bool] = typer.Option(
        None, "--keep-archives/--no-keep-archives", help="Keep downloaded zip archives."
    ),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Download attempts per batch."),
    sleep_between: Optional[float] = typer.Option(
        None, "--sleep-between", help="Seconds to wait after each downloaded batch."
    ),
):
    """
    Re-run only the batches recorded in the failure list.

    Batches whose accessions have all been extracted since are skipped.
    """
    cfg = load_config(config)
    settings = build_fetch_settings(
        config_section(cfg, "download"),
        work_dir=work_dir,
        out_dir=out_dir,
        keep_archives=keep_archives,
        max_retries=max_retries,
        sleep_between=sleep_between,
    )
    store = RunStore(settings.work_dir)
    batches = store.failed_batches()
    if not batches:
        console.print(f"No failed batches recorded in {store.failed_path}.")
        return
    require_tool(settings.datasets_bin)

    print_header("retry-failed")
    render_run_table(
        "Run Summary",
        {
            "Failed batches": ", ".join(b.label for b in batches),
            "Work dir": settings.work_dir,
            "Output dir": settings.out_dir,
            "Max retries": settings.max_retries,
        },
    )

    log_path = run_log_path(settings.work_dir, "retry")
    run_logger = setup_run_logger(log_path)
    try:
        run_logger.info(f"# started: {datetime.now().isoformat()}")
        run_logger.info(f"# failed_batches: {', '.join(b.label for b in batches)}")
        outcomes = fetch_with_progress(batches, settings, store)
        run_logger.info(f"# finished: {datetime.now().isoformat()}")
    finally:
        close_run_logger()

    finish_fetch_run(outcomes, store, log_path)


@app.command()
def analyze(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to TOML config file."),
    input_dir: Optional[Path] = typer.Option(None, "--input-dir", "-i", help="Directory of genome FASTA files."),
    output_root: Optional[Path] = typer.Option(None, "--output-root", "-o", help="Root for per-genome outputs."),
    skip_existing: Optional[bool] = typer.Option(
        None, "--skip-existing/--no-skip-existing", help="Skip genomes whose output directory exists."
    ),
    require_marker: Optional[bool] = typer.Option(
        None,
        "--require-marker/--no-require-marker",
        help="Only treat an output directory as done when it holds the completion marker.",
    ),
):
    """
    Run the analysis command once per genome FASTA file.

    Examples:
      genomebatch analyze -i genome_fna -o smorf_output
      SKIP_EXISTING=false genomebatch analyze -i genome_fna
    """
    cfg = load_config(config)
    analysis_cfg = config_section(cfg, "analysis")
    download_cfg = config_section(cfg, "download")

    input_value = Path(
        pick(input_dir, "INPUT_DIR", analysis_cfg, "input_dir", download_cfg.get("out_dir", DEFAULT_OUT_DIR))
    )
    output_value = Path(pick(output_root, "OUTPUT_ROOT", analysis_cfg, "output_root", DEFAULT_OUTPUT_ROOT))
    skip_value = as_bool(pick(skip_existing, "SKIP_EXISTING", analysis_cfg, "skip_existing", True), "skip_existing")
    marker_value = as_bool(
        pick(require_marker, None, analysis_cfg, "require_marker", False), "analysis.require_marker"
    )
    command = as_str_list(analysis_cfg.get("command", list(DEFAULT_COMMAND)), "analysis.command")
    patterns = as_str_list(analysis_cfg.get("patterns", list(DEFAULT_PATTERNS)), "analysis.patterns")

    require_tool(command[0])
    try:
        inputs = collect_inputs(input_value, patterns)
    except (InputDirectoryError, NoInputFilesError) as exc:
        console.print(f"[red]ERROR:[/red] {exc}")
        raise typer.Exit(code=EXIT_FATAL)

    output_value.mkdir(parents=True, exist_ok=True)
    print_header("analyze")
    render_run_table(
        "Run Summary",
        {
            "Input dir": input_value,
            "Output root": output_value,
            "Genomes": len(inputs),
            "Command": " ".join(command),
            "Skip existing": str(skip_value).lower(),
            "Require marker": str(marker_value).lower(),
        },
    )

    log_path = run_log_path(output_value, "analyze")
    run_logger = setup_run_logger(log_path)
    try:
        run_logger.info(f"# started: {datetime.now().isoformat()}")
        run_logger.info(f"# input_dir: {input_value}")
        run_logger.info(f"# output_root: {output_value}")
        run_logger.info(f"# command: {' '.join(command)}")
        run_logger.info(f"# skip_existing: {skip_value}")
        run_logger.info(f"# require_marker: {marker_value}")
        run_logger.info(f"# genomes: {len(inputs)}")

        progress = make_progress()
        with progress:
            task_id = progress.add_task("genomes", total=len(inputs))

            def advance(result: ItemResult, idx: int, total: int) -> None:
                progress.update(task_id, advance=1, description=f"{result.name} {result.status.value}")

            summary = run_items(
                inputs,
                output_value,
                command=command,
                skip_existing=skip_value,
                require_marker=marker_value,
                progress_callback=advance,
            )

        for state, count in status_counts(summary).items():
            run_logger.info(f"# {state}: {count}")
        for name in summary.failed:
            run_logger.info(f"# failed: {name}")
        run_logger.info(f"# finished: {datetime.now().isoformat()}")
    finally:
        close_run_logger()

    table = Table(title="Result Summary", show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Genomes", str(summary.total))
    for state in ItemStatus:
        table.add_row(state.value.capitalize(), str(summary.count(state)))
    table.add_row("Log", str(log_path))
    console.print(table)

    for line in summary_lines(summary):
        console.print(line, highlight=False, markup=False)
    if summary.failed:
        raise typer.Exit(code=EXIT_PARTIAL)


@app.command()
def status(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to TOML config file."),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="Directory holding the manifest."),
):
    """
    Show what the manifest and failure list in the work directory record.
    """
    cfg = load_config(config)
    download_cfg = config_section(cfg, "download")
    work_value = Path(pick(work_dir, "WORK_DIR", download_cfg, "work_dir", DEFAULT_WORK_DIR))
    store = RunStore(work_value)
    entries = store.manifest_entries()
    failed = store.failed_batches()

    table = Table(title=f"Run Store ({work_value})", show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value", overflow="fold")
    table.add_row("Manifest rows", str(len(entries)))
    table.add_row("Accessions", str(len({e.accession for e in entries})))
    table.add_row("Bytes", f"{sum(e.size_bytes for e in entries):,}")
    table.add_row("Failed batches", ", ".join(b.label for b in failed) if failed else "none")
    table.add_row("Manifest", str(store.manifest_path))
    console.print(table)


if __name__ == "__main__":
    app()
