# artifacts.py
from __future__ import annotations

import gzip
import hashlib
import io
import shutil
import tarfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Set

from .dag import ancestors
from .errors import ArtifactAccessDenied, ArtifactConflict, ArtifactError, ArtifactNotFound
from .model import Job

# ---------------------------------------------------------------------
# Run-scoped artifact store
# ---------------------------------------------------------------------
# Layout:
#   root/
#     <run_id>/
#       <artifact_name>.tar.gz
#
# A blob is a deterministic tar.gz of the captured path root: sorted
# traversal, zeroed mtimes/owners, gzip header without timestamp. The same
# tree always produces the same bytes (and digest).
#
# Artifacts are write-once per (run, name) and are destroyed when the run
# closes.
# ---------------------------------------------------------------------


DEFAULT_ARTIFACT_DIR = ".shipline/artifacts"


@dataclass(frozen=True)
class ArtifactHandle:
    run_id: str
    job: str
    name: str
    path_root: str
    digest: str
    size: int
    blob_path: str

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "job": self.job,
            "name": self.name,
            "path_root": self.path_root,
            "digest": self.digest,
            "size": self.size,
        }


@dataclass
class _RunArtifacts:
    ancestry: Dict[str, Set[str]]
    handles: Dict[str, ArtifactHandle] = field(default_factory=dict)
    reserved: Set[str] = field(default_factory=set)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _tar_add(tar: tarfile.TarFile, src: Path, arcname: str) -> None:
    data = src.read_bytes()
    info = tarfile.TarInfo(name=arcname)
    info.size = len(data)
    info.mtime = 0
    info.mode = 0o755 if src.stat().st_mode & 0o111 else 0o644
    tar.addfile(info, fileobj=io.BytesIO(data))


def snapshot(path_root: Path) -> bytes:
    """Pack a file or directory into deterministic tar.gz bytes."""
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            if path_root.is_file():
                _tar_add(tar, path_root, path_root.name)
            else:
                for f in _iter_files_under(path_root):
                    rel = str(f.relative_to(path_root)).replace("\\", "/")
                    _tar_add(tar, f, rel)
    return buf.getvalue()


def unpack(blob: bytes, dest: Path) -> List[str]:
    """Extract a blob produced by snapshot() into dest. Returns member names."""
    dest = Path(dest).resolve()
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        members = tar.getmembers()
        for m in members:
            target = (dest / m.name).resolve()
            if dest != target and dest not in target.parents:
                raise ArtifactError(f"Refusing to extract {m.name!r} outside {dest}")
            if not (m.isfile() or m.isdir()):
                raise ArtifactError(f"Unsupported archive member {m.name!r}")
        tar.extractall(path=str(dest))
    return [m.name for m in members]


class ArtifactStore:
    """
    File-backed artifact store shared by all jobs of all runs in a process.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._runs: Dict[str, _RunArtifacts] = {}

    def _run_dir(self, run_id: str) -> Path:
        d = self.root / run_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def _entry(self, run_id: str) -> _RunArtifacts:
        entry = self._runs.get(run_id)
        if entry is None:
            raise ArtifactError(f"Run {run_id} has no open artifact scope")
        return entry

    # ---- lifecycle ----

    def open_run(self, run_id: str, jobs: List[Job]) -> None:
        with self._lock:
            self._runs[run_id] = _RunArtifacts(ancestry=ancestors(jobs))

    def close_run(self, run_id: str) -> None:
        """Destroy every artifact of the run."""
        with self._lock:
            self._runs.pop(run_id, None)
        shutil.rmtree(self.root / run_id, ignore_errors=True)

    # ---- operations ----

    def publish(self, run_id: str, job_name: str, artifact_name: str, path_root: str | Path) -> ArtifactHandle:
        if not artifact_name or "/" in artifact_name or artifact_name in (".", ".."):
            raise ArtifactError(f"Invalid artifact name {artifact_name!r}")
        src = Path(path_root)
        if not src.exists():
            raise ArtifactNotFound(f"[{job_name}] artifact '{artifact_name}': path root not found: {src}")

        with self._lock:
            entry = self._entry(run_id)
            if artifact_name in entry.handles or artifact_name in entry.reserved:
                raise ArtifactConflict(
                    f"[{job_name}] artifact '{artifact_name}' was already published in run {run_id}"
                )
            entry.reserved.add(artifact_name)

        try:
            blob = snapshot(src)
            blob_path = self._run_dir(run_id) / f"{artifact_name}.tar.gz"
            tmp = blob_path.with_suffix(".gz.tmp")
            tmp.write_bytes(blob)
            tmp.replace(blob_path)
        except BaseException:
            with self._lock:
                entry.reserved.discard(artifact_name)
            raise

        handle = ArtifactHandle(
            run_id=run_id,
            job=job_name,
            name=artifact_name,
            path_root=str(src),
            digest=hashlib.sha256(blob).hexdigest(),
            size=len(blob),
            blob_path=str(blob_path),
        )
        with self._lock:
            entry.reserved.discard(artifact_name)
            entry.handles[artifact_name] = handle
        return handle

    def handle(self, run_id: str, artifact_name: str, job_name: str) -> ArtifactHandle:
        """Resolve an artifact for `job_name`, enforcing dependency visibility."""
        with self._lock:
            entry = self._entry(run_id)
            handle = entry.handles.get(artifact_name)
            if handle is None:
                raise ArtifactNotFound(f"[{job_name}] no artifact named '{artifact_name}' in run {run_id}")
            producer_visible = (
                job_name == handle.job
                or handle.job in entry.ancestry.get(job_name, set())
            )
        if not producer_visible:
            raise ArtifactAccessDenied(
                f"[{job_name}] cannot read artifact '{artifact_name}': "
                f"it was published by '{handle.job}', which '{job_name}' does not depend on"
            )
        return handle

    def fetch(self, run_id: str, artifact_name: str, job_name: str) -> bytes:
        handle = self.handle(run_id, artifact_name, job_name)
        return Path(handle.blob_path).read_bytes()

    def extract(self, run_id: str, artifact_name: str, job_name: str, dest: str | Path) -> List[str]:
        return unpack(self.fetch(run_id, artifact_name, job_name), Path(dest))

    def published(self, run_id: str) -> List[ArtifactHandle]:
        with self._lock:
            entry = self._runs.get(run_id)
            return list(entry.handles.values()) if entry else []
