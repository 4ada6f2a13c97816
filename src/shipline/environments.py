# environments.py
"""
Deployment environments and the gate that guards their output value.

An Environment's `url` is a single mutable slot. Only the job bound to that
environment may write it, through DeploymentGate, and only once the job has
succeeded: deploy() stages the endpoint returned by the publisher, commit()
records it, discard() drops it. A failed deployment never clears a
previously recorded URL.
"""
from __future__ import annotations

import json
import shutil
import tempfile
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from .artifacts import ArtifactHandle, unpack
from .errors import DeploymentFailed, EnvironmentMismatch, ProtectionRuleViolation
from .model import EnvironmentRule, Job, JobStatus, normalize_ref, utcnow


@dataclass
class Environment:
    name: str
    url: Optional[str] = None
    last_run_id: Optional[str] = None
    deployed_at: Optional[str] = None
    digest: Optional[str] = None
    branches: Optional[Tuple[str, ...]] = None
    requires_success: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "last_run_id": self.last_run_id,
            "deployed_at": self.deployed_at,
            "digest": self.digest,
        }


class EnvironmentRegistry:
    """
    Environments known to this engine. Recorded outputs are persisted to a
    JSON file (when a path is given) so later runs and `shipline envs` see them.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._envs: Dict[str, Environment] = {}
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        data = json.loads(self.path.read_text(encoding="utf-8"))
        for name, rec in data.items():
            self._envs[name] = Environment(
                name=name,
                url=rec.get("url"),
                last_run_id=rec.get("last_run_id"),
                deployed_at=rec.get("deployed_at"),
                digest=rec.get("digest"),
            )

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {name: env.to_dict() for name, env in sorted(self._envs.items())}
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, name: str) -> Environment:
        with self._lock:
            env = self._envs.get(name)
            if env is None:
                env = Environment(name=name)
                self._envs[name] = env
            return env

    def apply_rules(self, rules: Mapping[str, EnvironmentRule]) -> None:
        """Attach protection rules declared by a pipeline."""
        for name, rule in rules.items():
            env = self.get(name)
            env.branches = rule.branches
            env.requires_success = tuple(rule.requires_success)

    def record(self, name: str, url: str, run_id: str, digest: Optional[str]) -> Environment:
        with self._lock:
            env = self._envs.setdefault(name, Environment(name=name))
            env.url = url
            env.last_run_id = run_id
            env.deployed_at = utcnow()
            env.digest = digest
            self._save()
            return env

    def all(self) -> List[Environment]:
        with self._lock:
            return [self._envs[n] for n in sorted(self._envs)]


# ---------------------------------------------------------------------
# Publishers (the hosting collaborator)
# ---------------------------------------------------------------------

class Publisher(Protocol):
    def publish(self, environment: str, blob: bytes, handle: ArtifactHandle) -> str:
        """Push the artifact bytes live and return the endpoint URL."""
        ...


class DirectoryPublisher:
    """
    Serves environments out of a directory: <root>/<environment>/.

    The new tree is unpacked next to the live one and swapped in, so a failed
    unpack leaves the previous deployment untouched.
    """

    def __init__(self, root: str | Path, base_url: Optional[str] = None):
        self.root = Path(root).resolve()
        self.base_url = base_url

    def publish(self, environment: str, blob: bytes, handle: ArtifactHandle) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        live = self.root / environment
        staging = Path(tempfile.mkdtemp(prefix=f".{environment}-", dir=self.root))
        try:
            unpack(blob, staging)
            if live.exists():
                old = self.root / f".{environment}.old"
                shutil.rmtree(old, ignore_errors=True)
                live.replace(old)
                try:
                    staging.replace(live)
                except OSError:
                    old.replace(live)
                    raise
                shutil.rmtree(old, ignore_errors=True)
            else:
                staging.replace(live)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        if self.base_url:
            return f"{self.base_url.rstrip('/')}/{environment}/"
        return live.as_uri() + "/"


class HttpPublisher:
    """
    Uploads the artifact to an HTTP endpoint:
      POST <endpoint>/environments/<name>/deployments   (application/gzip)
    and expects a JSON body {"url": "..."}.
    """

    def __init__(self, endpoint: str, timeout: float = 60.0, headers: Optional[Dict[str, str]] = None):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.headers = dict(headers or {})

    def publish(self, environment: str, blob: bytes, handle: ArtifactHandle) -> str:
        url = f"{self.endpoint}/environments/{environment}/deployments"
        req_headers = {
            "Content-Type": "application/gzip",
            "X-Artifact-Digest": handle.digest,
            "X-Run-Id": handle.run_id,
        }
        req_headers.update(self.headers)
        req = urllib.request.Request(url, data=blob, headers=req_headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise DeploymentFailed(f"Publish to {url} failed: {e.code} {e.reason}. {error_body}")
        except urllib.error.URLError as e:
            raise DeploymentFailed(f"Network error publishing to {url}: {e.reason}")

        try:
            page_url = json.loads(body)["url"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise DeploymentFailed(f"Invalid publish response from {url}: {e}")
        return page_url


# ---------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------

@dataclass
class Deployment:
    environment: str
    url: str
    digest: str
    staged_at: str = field(default_factory=utcnow)


class DeploymentGate:
    def __init__(self, registry: EnvironmentRegistry, publisher: Publisher):
        self.registry = registry
        self.publisher = publisher
        self._lock = threading.Lock()
        self._env_locks: Dict[str, threading.Lock] = {}
        self._pending: Dict[Tuple[str, str], Deployment] = {}

    def _env_lock(self, name: str) -> threading.Lock:
        with self._lock:
            return self._env_locks.setdefault(name, threading.Lock())

    def check(
        self,
        environment_name: str,
        *,
        job: Job,
        ref: str,
        job_statuses: Mapping[str, JobStatus],
    ) -> None:
        """Binding and protection-rule checks, without side effects."""
        bound = job.environment.name if job.environment else None
        if bound != environment_name:
            raise EnvironmentMismatch(
                f"[{job.name}] cannot deploy to '{environment_name}': "
                f"job is bound to {bound!r}"
            )

        env = self.registry.get(environment_name)
        if env.branches and normalize_ref(ref) not in env.branches:
            raise ProtectionRuleViolation(
                f"[{job.name}] environment '{environment_name}' only accepts deployments "
                f"from {list(env.branches)}, not '{normalize_ref(ref)}'"
            )
        for required in env.requires_success:
            if job_statuses.get(required) != JobStatus.SUCCESS:
                raise ProtectionRuleViolation(
                    f"[{job.name}] environment '{environment_name}' requires job "
                    f"'{required}' to have succeeded in this run"
                )

    def deploy(
        self,
        environment_name: str,
        artifact: ArtifactHandle,
        blob: bytes,
        *,
        run_id: str,
        job: Job,
        ref: str,
        job_statuses: Mapping[str, JobStatus],
    ) -> str:
        """
        Publish `blob` to the environment and stage the returned endpoint.
        The environment's recorded output only changes on commit().
        """
        self.check(environment_name, job=job, ref=ref, job_statuses=job_statuses)

        with self._env_lock(environment_name):
            try:
                url = self.publisher.publish(environment_name, blob, artifact)
            except DeploymentFailed:
                raise
            except Exception as e:
                raise DeploymentFailed(f"[{job.name}] publishing to '{environment_name}' failed: {e}") from e
            if not url:
                raise DeploymentFailed(f"[{job.name}] publisher returned no URL for '{environment_name}'")

        with self._lock:
            self._pending[(run_id, job.name)] = Deployment(
                environment=environment_name,
                url=url,
                digest=artifact.digest,
            )
        return url

    def pending(self, run_id: str, job_name: str) -> Optional[Deployment]:
        with self._lock:
            return self._pending.get((run_id, job_name))

    def commit(self, run_id: str, job: Job, url: Optional[str] = None) -> Optional[Environment]:
        """
        Record the staged deployment of a successful job as the environment's
        current output. `url` overrides the publisher's endpoint (binding URL
        expression). No-op if the job deployed nothing.
        """
        with self._lock:
            staged = self._pending.pop((run_id, job.name), None)
        if staged is None:
            return None
        with self._env_lock(staged.environment):
            return self.registry.record(staged.environment, url or staged.url, run_id, staged.digest)

    def discard(self, run_id: str, job_name: str) -> None:
        with self._lock:
            self._pending.pop((run_id, job_name), None)
