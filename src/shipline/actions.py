# actions.py
from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .errors import DefinitionError

if TYPE_CHECKING:
    from .runner import StepContext

ActionFn = Callable[["StepContext", Mapping[str, Any]], int]


@dataclass(frozen=True)
class Action:
    """A reusable step: fn(context, inputs) -> exit status."""
    name: str
    fn: ActionFn
    scopes: Tuple[str, ...] = ()
    versions: Optional[Tuple[str, ...]] = None  # None: any version

    def __call__(self, context: "StepContext", inputs: Mapping[str, Any]) -> int:
        return self.fn(context, inputs)


class ActionRegistry:
    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}

    def register(
        self,
        name: str,
        fn: ActionFn,
        *,
        scopes: Iterable[str] = (),
        versions: Optional[Iterable[str]] = None,
    ) -> Action:
        act = Action(
            name=name,
            fn=fn,
            scopes=tuple(scopes),
            versions=tuple(versions) if versions is not None else None,
        )
        self._actions[name] = act
        return act

    def action(self, name: str, *, scopes: Iterable[str] = (), versions: Optional[Iterable[str]] = None):
        """Decorator form of register()."""
        def deco(fn: ActionFn) -> ActionFn:
            self.register(name, fn, scopes=scopes, versions=versions)
            return fn
        return deco

    def resolve(self, uses: str, version: str) -> Action:
        act = self._actions.get(uses)
        if act is None:
            raise DefinitionError(f"Unknown action '{uses}'. Known actions: {sorted(self._actions)}")
        if act.versions is not None and version not in act.versions:
            raise DefinitionError(
                f"Action '{uses}' has no version '{version}'. Available: {list(act.versions)}"
            )
        return act


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

CHECKOUT_IGNORE = (".git", ".shipline", "__pycache__", "*.pyc", ".DS_Store")


def _checkout_ignore(*exclude: Path):
    patterns = shutil.ignore_patterns(*CHECKOUT_IGNORE)
    excluded = {Path(p).resolve() for p in exclude}

    def ignore(directory: str, names: list[str]) -> set[str]:
        skipped = set(patterns(directory, names))
        base = Path(directory).resolve()
        # a state dir inside the source tree must not be copied into itself
        skipped.update(n for n in names if base / n in excluded)
        return skipped

    return ignore


def checkout(context: "StepContext", inputs: Mapping[str, Any]) -> int:
    """Copy the source tree into the job's workspace."""
    source = context.run.source
    if source is None or not Path(source).is_dir():
        context.log(f"checkout: source tree not available: {source}")
        return 1
    dest = context.workspace / str(inputs.get("path") or ".")
    shutil.copytree(
        source,
        dest,
        ignore=_checkout_ignore(context.runner.workspace_root, context.runner.artifacts.root),
        dirs_exist_ok=True,
    )
    context.log(f"checkout: {source} -> {dest}")
    context.set_output("ref", context.run.ref)
    return 0


def upload_artifact(context: "StepContext", inputs: Mapping[str, Any]) -> int:
    path = inputs.get("path")
    if not path:
        context.log("upload-artifact: missing required input 'path'")
        return 1
    name = str(inputs.get("name") or "dist")
    handle = context.publish_artifact(name, context.workspace / str(path))
    context.log(f"upload-artifact: {name} ({handle.size} bytes, sha256 {handle.digest[:12]}...)")
    context.set_output("digest", handle.digest)
    context.set_output("size", str(handle.size))
    return 0


def download_artifact(context: "StepContext", inputs: Mapping[str, Any]) -> int:
    name = str(inputs.get("name") or "dist")
    dest = context.workspace / str(inputs.get("path") or name)
    files = context.extract_artifact(name, dest)
    context.log(f"download-artifact: {name} -> {dest} ({len(files)} files)")
    context.set_output("path", str(dest))
    return 0


def deploy(context: "StepContext", inputs: Mapping[str, Any]) -> int:
    name = str(inputs.get("artifact") or "dist")
    binding = context.job.environment
    environment = str(inputs.get("environment") or (binding.name if binding else ""))
    url = context.deploy(environment, name)
    context.log(f"deploy: {name} -> {environment} at {url}")
    context.set_output("url", url)
    context.set_output("page_url", url)
    return 0


def default_registry() -> ActionRegistry:
    reg = ActionRegistry()
    reg.register("checkout", checkout, scopes=("read:contents",))
    reg.register("upload-artifact", upload_artifact)
    reg.register("download-artifact", download_artifact)
    reg.register("deploy", deploy, scopes=("write:pages", "write:id-token"))
    return reg
