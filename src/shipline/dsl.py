# src/shipline/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .model import (
    ActionRef,
    Command,
    Concurrency,
    EnvironmentBinding,
    EnvironmentRule,
    Job,
    Pipeline,
    Step,
    Trigger,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: str | None = None,
    scopes: Iterable[str] = (),
    env: Optional[Mapping[str, str]] = None,
) -> Command:
    """Create a shell step."""
    return Command(name=name, run=cmd, cwd=cwd, id=id, scopes=tuple(scopes), env=dict(env or {}))


def uses(
    name: str,
    ref: str,
    /,
    *,
    id: str | None = None,
    scopes: Iterable[str] = (),
    **inputs: Any,
) -> ActionRef:
    """
    Create an action step. `ref` is "action" or "action@version":

        uses("Upload", "upload-artifact@v1", name="dist", path="dist")
    """
    action, _, version = ref.partition("@")
    return ActionRef(
        name=name,
        uses=action,
        version=version or "v1",
        inputs=dict(inputs),
        id=id,
        scopes=tuple(scopes),
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    permissions: Optional[Dict[str, str]] = None,
    environment: str | EnvironmentBinding | None = None,
    url: str | None = None,
    env: Optional[Dict[str, str]] = None,
    display_name: str | None = None,
    required: bool = True,
    cwd: str | None = None,  # default cwd applied to command steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if isinstance(s, Command) and s.cwd is None else s
            for s in steps_final
        ]

    if isinstance(environment, str):
        environment = EnvironmentBinding(name=environment, url=url)

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        permissions=dict(permissions) if permissions is not None else None,
        environment=environment,
        env=dict(env or {}),
        display_name=display_name,
        required=required,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._permissions: Optional[dict[str, str]] = None
        self._environment: Optional[EnvironmentBinding] = None
        self._display_name: Optional[str] = None
        self._required: bool = True

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, ref: str, **kwargs):
        self._steps.append(uses(name, ref, **kwargs))
        return self

    def grant(self, **levels: str):
        # id_token="write" -> {"id-token": "write"}
        self._permissions = dict(self._permissions or {})
        self._permissions.update({k.replace("_", "-"): v for k, v in levels.items()})
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def deploy_to(self, environment: str, url: str | None = None):
        self._environment = EnvironmentBinding(name=environment, url=url)
        return self

    def titled(self, display_name: str):
        self._display_name = display_name
        return self

    def optional(self, optional: bool = True):
        self._required = not optional
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            permissions=self._permissions,
            environment=self._environment,
            env=dict(self._env),
            display_name=self._display_name,
            required=self._required,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *jobs: Job,
    on: str = "push",
    branches: Optional[Iterable[str]] = None,
    permissions: Optional[Dict[str, str]] = None,
    concurrency: str | None = None,
    cancel_in_progress: bool = False,
    env: Optional[Dict[str, str]] = None,
    environments: Optional[Dict[str, EnvironmentRule]] = None,
) -> Pipeline:
    """
    Pipeline definition helper:

        PIPELINE = pipeline(
            "Deploy",
            job("build", ...),
            job("deploy", ..., needs=["build"], environment="prod"),
            branches=["main"],
            concurrency="deploy",
        )

    `permissions` is the pipeline grant; left empty it denies every scope,
    including the ones `checkout` and `deploy` require.
    """
    return Pipeline(
        name=name,
        jobs=list(jobs),
        trigger=Trigger(event=on, branches=tuple(branches) if branches else None),
        permissions=dict(permissions or {}),
        concurrency=Concurrency(group=concurrency, cancel_in_progress=cancel_in_progress) if concurrency else None,
        env=dict(env or {}),
        environments=dict(environments or {}),
    )
