# schema.py
"""
Pydantic models for YAML pipeline definitions.

    name: Deploy
    on:
      push:
        branches: [main]
    permissions:
      contents: read
      pages: write
      id-token: write
    concurrency:
      group: deploy
      cancel-in-progress: false
    jobs:
      build:
        steps:
          - uses: checkout@v1
          - run: make site
          - uses: upload-artifact@v1
            with: {name: dist, path: dist}
      deploy:
        needs: build
        environment: {name: prod, url: "${{ steps.deployment.outputs.url }}"}
        steps:
          - id: deployment
            uses: deploy@v1
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

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

Scalar = Union[str, int, float, bool]


def _stringify(values: Dict[str, Scalar]) -> Dict[str, str]:
    out = {}
    for k, v in values.items():
        if isinstance(v, bool):
            out[k] = "true" if v else "false"
        else:
            out[k] = str(v)
    return out


class _Spec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepSpec(_Spec):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    scopes: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_kind(self) -> "StepSpec":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.uses is not None and (self.working_directory or self.env):
            raise ValueError("'working-directory' and 'env' only apply to 'run' steps")
        if self.run is not None and self.with_:
            raise ValueError("'with' only applies to 'uses' steps")
        return self

    def to_step(self) -> Step:
        if self.run is not None:
            first_line = self.run.strip().splitlines()[0] if self.run.strip() else "run"
            return Command(
                name=self.name or first_line,
                run=self.run,
                cwd=self.working_directory,
                id=self.id,
                scopes=tuple(self.scopes),
                env=_stringify(self.env),
            )
        uses, _, version = self.uses.partition("@")
        return ActionRef(
            name=self.name or self.uses,
            uses=uses,
            version=version or "v1",
            inputs=dict(self.with_),
            id=self.id,
            scopes=tuple(self.scopes),
        )


class EnvironmentSpec(_Spec):
    name: str
    url: Optional[str] = None


class JobSpec(_Spec):
    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    permissions: Optional[Dict[str, str]] = None
    environment: Optional[Union[str, EnvironmentSpec]] = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    steps: List[StepSpec] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    def to_job(self, key: str) -> Job:
        binding = None
        if isinstance(self.environment, str):
            binding = EnvironmentBinding(name=self.environment)
        elif self.environment is not None:
            binding = EnvironmentBinding(name=self.environment.name, url=self.environment.url)
        return Job(
            name=key,
            steps=[s.to_step() for s in self.steps],
            needs=list(self.needs),
            permissions=dict(self.permissions) if self.permissions is not None else None,
            environment=binding,
            env=_stringify(self.env),
            display_name=self.name,
            required=not self.continue_on_error,
        )


class EventSpec(_Spec):
    branches: Optional[List[str]] = None


class ConcurrencySpec(_Spec):
    group: str
    cancel_in_progress: bool = Field(default=False, alias="cancel-in-progress")


class EnvironmentRuleSpec(_Spec):
    branches: Optional[List[str]] = None
    requires_success: List[str] = Field(default_factory=list, alias="requires-success")


class PipelineSpec(_Spec):
    name: str = "pipeline"
    on: Dict[str, Optional[EventSpec]] = Field(default_factory=lambda: {"push": None})
    permissions: Dict[str, str] = Field(default_factory=dict)
    concurrency: Optional[Union[str, ConcurrencySpec]] = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    environments: Dict[str, EnvironmentRuleSpec] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec]

    @field_validator("on", mode="before")
    @classmethod
    def _on_mapping(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {v: None}
        if isinstance(v, list):
            return {e: None for e in v}
        return v

    @field_validator("on")
    @classmethod
    def _single_event(cls, v: Dict[str, Optional[EventSpec]]) -> Dict[str, Optional[EventSpec]]:
        if len(v) != 1:
            raise ValueError(f"exactly one trigger event is supported, got {sorted(v)}")
        return v

    @field_validator("jobs")
    @classmethod
    def _has_jobs(cls, v: Dict[str, JobSpec]) -> Dict[str, JobSpec]:
        if not v:
            raise ValueError("a pipeline needs at least one job")
        return v

    def to_pipeline(self) -> Pipeline:
        (event, event_spec), = self.on.items()
        branches = tuple(event_spec.branches) if event_spec and event_spec.branches else None

        concurrency = None
        if isinstance(self.concurrency, str):
            concurrency = Concurrency(group=self.concurrency)
        elif self.concurrency is not None:
            concurrency = Concurrency(
                group=self.concurrency.group,
                cancel_in_progress=self.concurrency.cancel_in_progress,
            )

        return Pipeline(
            name=self.name,
            jobs=[job.to_job(key) for key, job in self.jobs.items()],
            trigger=Trigger(event=event, branches=branches),
            permissions=dict(self.permissions),
            concurrency=concurrency,
            env=_stringify(self.env),
            environments={
                name: EnvironmentRule(
                    branches=tuple(rule.branches) if rule.branches else None,
                    requires_success=tuple(rule.requires_success),
                )
                for name, rule in self.environments.items()
            },
        )
