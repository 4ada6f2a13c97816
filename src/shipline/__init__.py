from .dsl import job, sh, uses, pipeline, JobBuilder, build
from .engine import Engine
from .loader import load_workflow
from .model import ActionRef, Command, Job, Pipeline, PipelineRun, Step

__all__ = [
    "job", "sh", "uses", "pipeline", "JobBuilder", "build",
    "Engine", "load_workflow",
    "ActionRef", "Command", "Job", "Pipeline", "PipelineRun", "Step",
]
