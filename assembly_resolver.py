"""
Resolve an NCBI Assembly query into a stable, sorted accession list and split it
into download batches.

Two chained E-utilities lookups are used:
    esearch   query -> assembly UIDs
    esummary  UID chunk -> {uid: document summary}  (accession taken from the summary)
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from Bio import Entrez

DEFAULT_DB = "assembly"
DEFAULT_RETMAX = 200000
DEFAULT_UID_CHUNK_SIZE = 500
DEFAULT_DELAY_SEC = 0.34
ACCESSION_FIELD = "AssemblyAccession"
RESERVED_RESULT_KEY = "uids"
MIN_LABEL_WIDTH = 4

logger = logging.getLogger("genomebatch.resolver")


class NoResultsError(RuntimeError):
    pass


class NoAccessionsError(RuntimeError):
    pass


@dataclass(frozen=True)
class Batch:
    index: int
    label: str
    accessions: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.accessions)


def chunked(items: Sequence[str], size: int) -> List[List[str]]:
    if size < 1:
        raise ValueError(f"chunk size must be >= 1 (got {size})")
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


def search_uids(query: str, db: str = DEFAULT_DB, retmax: int = DEFAULT_RETMAX) -> List[str]:
    handle = Entrez.esearch(db=db, term=query, retmax=retmax, retmode="json")
    try:
        record = json.load(handle)
    finally:
        handle.close()
    id_list = (record.get("esearchresult") or {}).get("idlist") or []
    # esearch may repeat a UID across result pages
    return list(dict.fromkeys(str(uid) for uid in id_list))


def extract_accession(summary: Dict) -> Optional[str]:
    value = summary.get(ACCESSION_FIELD)
    if not value:
        wanted = ACCESSION_FIELD.lower()
        value = next((v for k, v in summary.items() if str(k).lower() == wanted and v), None)
    if not value:
        return None
    value = str(value).strip()
    return value or None


def summarize_uids(uids: Sequence[str], db: str = DEFAULT_DB) -> List[str]:
    handle = Entrez.esummary(db=db, id=",".join(uids), retmode="json")
    try:
        record = json.load(handle)
    finally:
        handle.close()

    accessions: List[str] = []
    for key, summary in (record.get("result") or {}).items():
        if key == RESERVED_RESULT_KEY or not isinstance(summary, dict):
            continue
        accession = extract_accession(summary)
        if accession is None:
            logger.debug("UID %s has no assembly accession, skipped", key)
            continue
        accessions.append(accession)
    return accessions


def resolve_accessions(
    query: str,
    db: str = DEFAULT_DB,
    retmax: int = DEFAULT_RETMAX,
    chunk_size: int = DEFAULT_UID_CHUNK_SIZE,
    delay_sec: float = DEFAULT_DELAY_SEC,
) -> List[str]:
    """
    Turn a search query into the sorted set of assembly accessions it matches.

    Raises NoResultsError when the search returns no UIDs and NoAccessionsError
    when none of the returned summaries carries an accession.
    """
    logger.info("Fetching %s UIDs for query: %s", db, query)
    uids = search_uids(query, db=db, retmax=retmax)
    if not uids:
        raise NoResultsError(f"no {db} UIDs returned for query: {query}")
    logger.info("Found %d %s UIDs.", len(uids), db)

    found = set()
    chunks = chunked(uids, chunk_size)
    for idx, chunk in enumerate(chunks, 1):
        accessions = summarize_uids(chunk, db=db)
        logger.info("UID chunk %d/%d: %d accessions", idx, len(chunks), len(accessions))
        found.update(accessions)
        if idx < len(chunks):
            time.sleep(delay_sec)

    if not found:
        raise NoAccessionsError(
            f"{len(uids)} UIDs returned for query '{query}' but no assembly accessions could be resolved"
        )
    logger.info("Found %d unique assembly accessions.", len(found))
    return sorted(found)


def label_width(batch_count: int) -> int:
    return max(MIN_LABEL_WIDTH, len(str(batch_count)))


def partition_batches(accessions: Sequence[str], size: int) -> List[Batch]:
    groups = chunked(list(accessions), size)
    width = label_width(len(groups))
    return [
        Batch(index=idx, label=f"{idx:0{width}d}", accessions=tuple(group))
        for idx, group in enumerate(groups, 1)
    ]


def write_accessions(path: Path, accessions: Iterable[str]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8") as f:
        for accession in accessions:
            f.write(f"{accession}\n")
            count += 1
    return count


def read_accessions(path: Path) -> List[str]:
    """Read one accession per line; blank and '#' lines are ignored, first occurrence wins."""
    seen: Dict[str, None] = {}
    with path.open("r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            seen.setdefault(line, None)
    return list(seen)
