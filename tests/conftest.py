"""
Shared fixtures for genomebatch tests.

No test touches the network or runs real tools: Entrez calls are replaced by
in-memory JSON handles, `datasets` and the analysis command by fakes of
subprocess.run, and time.sleep by a recorder.
"""

import io
import json
import subprocess
import zipfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

import assembly_resolver
import batch_fetch


def json_handle(payload: Dict) -> io.BytesIO:
    return io.BytesIO(json.dumps(payload).encode("utf-8"))


def write_genome_zip(path: Path, accessions: Iterable[str], plain: bool = True, gz: bool = False) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("README.md", "NCBI Datasets package\n")
        zf.writestr("ncbi_dataset/data/assembly_data_report.jsonl", "{}\n")
        for acc in accessions:
            base = f"ncbi_dataset/data/{acc}/{acc}_ASM{acc[-3:]}v1_genomic.fna"
            if plain:
                zf.writestr(base, f">{acc} chromosome\nACGTACGT\n")
            if gz:
                zf.writestr(base + ".gz", b"\x1f\x8b fake gzip")
    return path


class FakeDatasets:
    """Stands in for subprocess.run when the command is `datasets download ...`."""

    def __init__(self, fail_times: int = 0, always_fail: bool = False, gz: bool = False, corrupt: bool = False):
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.gz = gz
        self.corrupt = corrupt
        self.calls: List[List[str]] = []

    def __call__(self, cmd, check=False, **kwargs):
        self.calls.append(list(cmd))
        if self.always_fail or len(self.calls) <= self.fail_times:
            return subprocess.CompletedProcess(cmd, 1)
        archive = Path(cmd[cmd.index("--filename") + 1])
        accessions = cmd[cmd.index("accession") + 1:cmd.index("--filename")]
        if self.corrupt:
            archive.write_bytes(b"this is not a zip")
        else:
            write_genome_zip(archive, accessions, plain=True, gz=self.gz)
        return subprocess.CompletedProcess(cmd, 0)

    @property
    def requested(self) -> List[List[str]]:
        return [c[c.index("accession") + 1:c.index("--filename")] for c in self.calls]


class FakeEntrez:
    def __init__(self, uids: List[str], summaries: Dict[str, Dict]):
        self.uids = uids
        self.summaries = summaries
        self.summary_calls: List[List[str]] = []
        self.search_kwargs: Optional[Dict] = None

    def esearch(self, **kwargs):
        self.search_kwargs = kwargs
        return json_handle({"header": {}, "esearchresult": {"count": str(len(self.uids)), "idlist": self.uids}})

    def esummary(self, **kwargs):
        ids = kwargs["id"].split(",")
        self.summary_calls.append(ids)
        result: Dict = {"uids": ids}
        for uid in ids:
            if uid in self.summaries:
                result[uid] = self.summaries[uid]
        return json_handle({"header": {}, "result": result})


@pytest.fixture
def sleeps(monkeypatch):
    calls: List[float] = []
    monkeypatch.setattr(batch_fetch.time, "sleep", lambda sec: calls.append(sec))
    return calls


@pytest.fixture
def fake_entrez(monkeypatch):
    def install(uids: List[str], summaries: Dict[str, Dict]) -> FakeEntrez:
        fake = FakeEntrez(uids, summaries)
        monkeypatch.setattr(assembly_resolver.Entrez, "esearch", fake.esearch)
        monkeypatch.setattr(assembly_resolver.Entrez, "esummary", fake.esummary)
        return fake

    return install


@pytest.fixture
def fake_datasets(monkeypatch):
    def install(**kwargs) -> FakeDatasets:
        fake = FakeDatasets(**kwargs)
        monkeypatch.setattr(batch_fetch.subprocess, "run", fake)
        return fake

    return install


@pytest.fixture
def fetch_settings(tmp_path):
    return batch_fetch.FetchSettings(
        work_dir=tmp_path / "work",
        out_dir=tmp_path / "fna",
        max_retries=3,
        retry_delay_sec=5,
        sleep_between_batches=1,
    )
