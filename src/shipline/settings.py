# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

STATE_DIR = os.environ.get("SHIPLINE_STATE_DIR", ".shipline")


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Engine configuration. Everything lives under `state_dir` unless
    overridden:
      state_dir/
        artifacts/          run-scoped artifact blobs
        workspaces/         per-job isolated working directories
        pages/              DirectoryPublisher output
        runs/               run reports (JSON)
        environments.json   recorded environment outputs
    """
    state_dir: Path = Path(STATE_DIR)
    max_workers: Optional[int] = None
    pages_dir: Optional[Path] = None
    pages_url: Optional[str] = None
    publish_endpoint: Optional[str] = None
    keep_workspaces: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        pages_dir = environ.get("SHIPLINE_PAGES_DIR")
        return cls(
            state_dir=Path(environ.get("SHIPLINE_STATE_DIR", ".shipline")),
            max_workers=_int_or_none(environ.get("SHIPLINE_MAX_WORKERS")),
            pages_dir=Path(pages_dir) if pages_dir else None,
            pages_url=environ.get("SHIPLINE_PAGES_URL") or None,
            publish_endpoint=environ.get("SHIPLINE_PUBLISH_ENDPOINT") or None,
            keep_workspaces=_flag(environ.get("SHIPLINE_KEEP_WORKSPACES")),
        )

    def override(self, **changes) -> "Settings":
        """Return a copy with the non-None changes applied (CLI options)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def artifacts_dir(self) -> Path:
        return self.state_dir / "artifacts"

    @property
    def workspaces_dir(self) -> Path:
        return self.state_dir / "workspaces"

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def environments_file(self) -> Path:
        return self.state_dir / "environments.json"

    @property
    def publish_dir(self) -> Path:
        return self.pages_dir or (self.state_dir / "pages")
