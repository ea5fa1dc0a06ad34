from .model import ChangeSet, PipelineDefinition, JobStep, StepKind, RegistryTarget
from .orchestrator import Orchestrator
from .result import RunResult, Status
# Imported last: the dsl ``cache`` helper must win over the ``pipelane.cache`` submodule attribute.
from .dsl import wf, pipeline, install, test, build, containerize, publish, registry, cache

__all__ = [
    "wf", "pipeline", "install", "test", "build", "containerize", "publish", "registry", "cache",
    "ChangeSet", "PipelineDefinition", "JobStep", "StepKind", "RegistryTarget",
    "Orchestrator", "RunResult", "Status",
]
