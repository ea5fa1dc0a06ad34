# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from .errors import ConfigurationError


class StepKind(str, Enum):
    INSTALL = "install"
    TEST = "test"
    BUILD = "build"
    CONTAINERIZE = "containerize"
    PUBLISH = "publish"


class TagStrategy(str, Enum):
    FIXED = "fixed"      # e.g. always ":latest"
    CONTENT = "content"  # derived from the build context digest


def normalize_path(path: str) -> str:
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p


@dataclass(frozen=True)
class ChangeSet:
    """The modified file paths of one run, in first-seen order."""
    paths: Tuple[str, ...] = ()

    @classmethod
    def of(cls, paths: Iterable[str]) -> ChangeSet:
        seen: Dict[str, None] = {}
        for p in paths:
            norm = normalize_path(p)
            if norm:
                seen.setdefault(norm, None)
        return cls(paths=tuple(seen))

    def __iter__(self):
        return iter(self.paths)

    def __len__(self) -> int:
        return len(self.paths)

    @property
    def empty(self) -> bool:
        return not self.paths


@dataclass(frozen=True)
class JobStep:
    """A single typed stage inside a pipeline."""
    kind: StepKind
    name: str
    run: str = ""
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    # install steps may be skipped on an exact cache hit
    cache_bound: bool = False


@dataclass(frozen=True)
class CacheSpec:
    """
    Dependency cache binding for a pipeline.

    The key is built from the bytes of every file matching `lockfiles`;
    `paths` are the directories archived on save and extracted on restore.
    """
    domain: str
    lockfiles: Tuple[str, ...]
    paths: Tuple[str, ...]
    restore_keys: Tuple[str, ...] = ()
    skip_install_on_hit: bool = False
    keep: int = 3


@dataclass(frozen=True)
class CredentialRef:
    """Opaque handle to a registry secret. Never carries the secret itself."""
    handle: str
    username: str = ""

    def __repr__(self) -> str:
        return f"CredentialRef(handle={self.handle!r}, username={self.username!r})"


@dataclass(frozen=True)
class RegistryTarget:
    host: str
    repository: str
    credential: Optional[CredentialRef] = None
    tag_strategy: TagStrategy = TagStrategy.FIXED
    fixed_tag: str = "latest"

    @property
    def name(self) -> str:
        return f"{self.host}/{self.repository}"

    def tag_for(self, content_tag: str) -> str:
        if self.tag_strategy is TagStrategy.CONTENT:
            return content_tag
        return self.fixed_tag

    def reference(self, tag: str) -> str:
        return f"{self.name}:{tag}"


@dataclass(frozen=True)
class PipelineDefinition:
    """
    One independently triggerable build/publish lane for a service.

    `triggers` are path globs matched against the change-set; `always_run`
    pipelines are also selected when the change-set is empty.
    """
    name: str
    triggers: Tuple[str, ...]
    steps: Tuple[JobStep, ...]
    registries: Tuple[RegistryTarget, ...] = ()
    cache: Optional[CacheSpec] = None
    env: Dict[str, str] = field(default_factory=dict)
    always_run: bool = False

    def step_kinds(self) -> list[StepKind]:
        return [s.kind for s in self.steps]

    def containerize_step(self) -> Optional[JobStep]:
        for s in self.steps:
            if s.kind is StepKind.CONTAINERIZE:
                return s
        return None

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise ConfigurationError(pipeline="<unnamed>", message="pipeline name must not be empty")
        if not self.triggers or not all(t and t.strip() for t in self.triggers):
            raise ConfigurationError(pipeline=self.name, message="trigger globs must be non-empty")
        if not self.steps:
            raise ConfigurationError(pipeline=self.name, message="pipeline must have at least one step")

        containerized = False
        has_publish = False
        for step in self.steps:
            if not isinstance(step.kind, StepKind):
                raise ConfigurationError(pipeline=self.name, message=f"step '{step.name}' has unknown kind {step.kind!r}")
            if step.kind is StepKind.CONTAINERIZE:
                containerized = True
            elif step.kind is StepKind.PUBLISH:
                has_publish = True
                if not containerized:
                    raise ConfigurationError(
                        pipeline=self.name,
                        message=f"publish step '{step.name}' must come after a containerize step",
                    )
            elif not step.run.strip():
                raise ConfigurationError(pipeline=self.name, message=f"step '{step.name}' has no command")

        if has_publish and not self.registries:
            raise ConfigurationError(pipeline=self.name, message="publish step declared but no registry targets")

        for r in self.registries:
            if r.credential is not None and not r.credential.username:
                raise ConfigurationError(pipeline=self.name, message=f"registry '{r.name}' has a credential but no username")

        names = [r.name for r in self.registries]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigurationError(pipeline=self.name, message=f"duplicate registry targets: {dupes}")

        if self.cache is not None:
            if not self.cache.domain:
                raise ConfigurationError(pipeline=self.name, message="cache domain must not be empty")
            if not self.cache.lockfiles or not self.cache.paths:
                raise ConfigurationError(pipeline=self.name, message="cache needs lockfiles and paths")
            if self.cache.keep < 1:
                raise ConfigurationError(pipeline=self.name, message="cache keep must be at least 1")


def validate_all(pipelines: Iterable[PipelineDefinition]) -> None:
    """Validate every definition and reject duplicate pipeline names."""
    seen: set[str] = set()
    for p in pipelines:
        p.validate()
        if p.name in seen:
            raise ConfigurationError(pipeline=p.name, message="duplicate pipeline name")
        seen.add(p.name)
