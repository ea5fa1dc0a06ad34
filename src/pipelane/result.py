# result.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .model import StepKind


class Status(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class PublishReport:
    """Outcome of publishing to one registry target."""
    target: str
    success: bool
    reference: Optional[str] = None
    digest: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 0
    message: str = ""


@dataclass(frozen=True)
class StepOutcome:
    name: str
    kind: StepKind
    status: Status
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    reason: str = ""
    publishes: Tuple[PublishReport, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is not Status.FAILED


@dataclass(frozen=True)
class PipelineResult:
    name: str
    status: Status
    reason: str = ""
    cache: str = ""
    outcomes: Tuple[StepOutcome, ...] = ()
    not_executed: Tuple[str, ...] = ()
    published: Tuple[str, ...] = ()
    image_tag: Optional[str] = None

    @property
    def publish_reports(self) -> List[PublishReport]:
        return [r for o in self.outcomes for r in o.publishes]

    @property
    def failed_publishes(self) -> List[PublishReport]:
        return [r for r in self.publish_reports if not r.success]


@dataclass(frozen=True)
class RunResult:
    """
    Aggregate result of one run. Frozen once the orchestrator returns it.

    Every known pipeline has an entry; unselected ones are Skipped.
    """
    status: Status
    pipelines: Mapping[str, PipelineResult] = field(default_factory=dict)
    selected: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "pipelines", MappingProxyType(dict(self.pipelines)))

    def __getitem__(self, name: str) -> PipelineResult:
        return self.pipelines[name]

    def __getattr__(self, name: str) -> PipelineResult:
        # result.backend reads like the per-pipeline status it is
        pipelines = self.__dict__.get("pipelines")
        if pipelines is not None and name in pipelines:
            return pipelines[name]
        raise AttributeError(name)

    @property
    def published(self) -> List[str]:
        return [ref for p in self.pipelines.values() for ref in p.published]

    def to_dict(self) -> Dict[str, Any]:
        def _clean(obj):
            if isinstance(obj, Enum):
                return obj.value
            if isinstance(obj, dict):
                return {k: _clean(v) for k, v in obj.items()}
            if isinstance(obj, (list, tuple)):
                return [_clean(v) for v in obj]
            return obj

        return {
            "status": self.status.value,
            "selected": list(self.selected),
            "pipelines": {name: _clean(asdict(p)) for name, p in self.pipelines.items()},
        }
