# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .errors import DefinitionError
from .model import Job, Pipeline
from .schema import PipelineSpec

YAML_SUFFIXES = (".yml", ".yaml")


def parse_pipeline(data: Any, *, source: str = "<memory>") -> Pipeline:
    """Validate a decoded YAML document and build a Pipeline from it."""
    if not isinstance(data, dict):
        raise DefinitionError(f"{source}: pipeline definition must be a mapping")
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data = dict(data)
        data["on"] = data.pop(True)
    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"{source}: invalid pipeline definition\n{e}") from e
    return spec.to_pipeline()


def load_yaml_pipeline(path: Path) -> Pipeline:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise DefinitionError(f"{path.name}: invalid YAML: {e}") from e
    return parse_pipeline(data, source=path.name)


def _as_pipeline(obj: Any, wf_path: Path, permissions: Optional[Dict[str, str]] = None) -> Pipeline:
    if isinstance(obj, Pipeline):
        return obj
    if isinstance(obj, list) and all(isinstance(j, Job) for j in obj):
        # an empty grant denies every scope, so checkout and deploy need PERMISSIONS
        return Pipeline(name=wf_path.stem, jobs=obj, permissions=dict(permissions or {}))
    raise DefinitionError(
        "Workflow must return/define a Pipeline or a List[Job]. "
        "Define workflow() -> Pipeline, PIPELINE = pipeline(...) or JOBS = [Job, ...]."
    )


def load_python_pipeline(wf_path: Path) -> Pipeline:
    """
    Load a pipeline from a python file.

    The file must define one of:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...)
      - JOBS = [Job, ...]

    A bare job list takes its pipeline grant from an optional
    PERMISSIONS = {"contents": "read", ...} global.
    """
    module_name = f"shipline_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    permissions = globals_dict.get("PERMISSIONS")

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        return _as_pipeline(globals_dict["workflow"](), wf_path, permissions)
    if "PIPELINE" in globals_dict:
        return _as_pipeline(globals_dict["PIPELINE"], wf_path)
    if "JOBS" in globals_dict:
        return _as_pipeline(globals_dict["JOBS"], wf_path, permissions)
    raise DefinitionError(f"{wf_path.name} defines neither workflow(), PIPELINE nor JOBS")


def load_workflow(path: str | Path) -> Pipeline:
    """Load a pipeline from a .yml/.yaml definition or a .py workflow module."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in YAML_SUFFIXES:
        return load_yaml_pipeline(wf_path)
    if wf_path.suffix == ".py":
        return load_python_pipeline(wf_path)
    raise DefinitionError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")


def find_workflow_files(root: str | Path = ".") -> List[Path]:
    """
    Candidate workflow files in a directory:
      shipline.yml / shipline.yaml, .shipline/pipelines/*.yml, *_workflow.py
    """
    base = Path(root)
    found: List[Path] = []
    for name in ("shipline.yml", "shipline.yaml"):
        p = base / name
        if p.exists():
            found.append(p)
    pipelines_dir = base / ".shipline" / "pipelines"
    if pipelines_dir.is_dir():
        found.extend(sorted(p for p in pipelines_dir.iterdir() if p.suffix in YAML_SUFFIXES))
    found.extend(sorted(base.glob("*_workflow.py")))
    return found
