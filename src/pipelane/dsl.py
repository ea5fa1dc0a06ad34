# src/pipelane/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .model import (
    CacheSpec,
    CredentialRef,
    JobStep,
    PipelineDefinition,
    RegistryTarget,
    StepKind,
    TagStrategy,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def install(cmd: str, *, name: str = "Install dependencies", cwd: str | None = None, cached: bool = True) -> JobStep:
    """Create an install step. Bound to the pipeline cache unless cached=False."""
    return JobStep(kind=StepKind.INSTALL, name=name, run=cmd, cwd=cwd, cache_bound=cached)


def test(cmd: str, *, name: str = "Run tests", cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> JobStep:
    return JobStep(kind=StepKind.TEST, name=name, run=cmd, cwd=cwd, env=env or {})


# not a test function
test.__test__ = False


def build(cmd: str, *, name: str = "Build", cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> JobStep:
    return JobStep(kind=StepKind.BUILD, name=name, run=cmd, cwd=cwd, env=env or {})


def containerize(
    *,
    name: str = "Build image",
    cwd: str | None = None,
    dockerfile: str | None = None,
    cmd: str | None = None,
) -> JobStep:
    """
    Create an image build step. The local image name is exposed to the
    command as $PIPELANE_IMAGE (and the run's tag as $PIPELANE_IMAGE_TAG).
    """
    if cmd is None:
        cmd = 'docker build -t "$PIPELANE_IMAGE"'
        if dockerfile:
            cmd += f' -f "{dockerfile}"'
        cmd += " ."
    return JobStep(kind=StepKind.CONTAINERIZE, name=name, run=cmd, cwd=cwd)


def publish(*, name: str = "Push image") -> JobStep:
    """Push the containerized image to every registry target of the pipeline."""
    return JobStep(kind=StepKind.PUBLISH, name=name)


def registry(
    host: str,
    repository: str,
    *,
    credential: str | None = None,
    username: str = "",
    tag: str = "latest",
    content_addressed: bool = False,
) -> RegistryTarget:
    """
    Declare a registry target.

    credential is the *name* of the secret (an environment variable), never
    the secret itself.
    """
    return RegistryTarget(
        host=host,
        repository=repository,
        credential=CredentialRef(handle=credential, username=username) if credential else None,
        tag_strategy=TagStrategy.CONTENT if content_addressed else TagStrategy.FIXED,
        fixed_tag=tag,
    )


def cache(
    domain: str,
    *,
    lockfiles: Iterable[str],
    paths: Iterable[str],
    restore_keys: Iterable[str] = (),
    skip_install_on_hit: bool = False,
    keep: int = 3,
) -> CacheSpec:
    return CacheSpec(
        domain=domain,
        lockfiles=tuple(lockfiles),
        paths=tuple(paths),
        restore_keys=tuple(restore_keys),
        skip_install_on_hit=skip_install_on_hit,
        keep=keep,
    )


# ---------------------------------------------------------------------
# Pipeline helper
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *steps: JobStep,
    triggers: Optional[List[str]] = None,
    registries: Optional[List[RegistryTarget]] = None,
    cache: Optional[CacheSpec] = None,
    env: Optional[Dict[str, str]] = None,
    always_run: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> PipelineDefinition:
    if not steps:
        raise ValueError(f"pipeline({name!r}) must have at least one step")

    steps_final = list(steps)
    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return PipelineDefinition(
        name=name,
        triggers=tuple(triggers or ()),
        steps=tuple(steps_final),
        registries=tuple(registries or ()),
        cache=cache,
        env=dict(env or {}),
        always_run=always_run,
    )


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*pipelines: PipelineDefinition) -> List[PipelineDefinition]:
    """
    Workflow definition helper.

        from pipelane import wf, pipeline, install

        def workflow():
            return wf(
                pipeline(...),
                pipeline(...),
            )

    Or use PIPELINES directly:
        PIPELINES = wf(pipeline(...), pipeline(...))
    """
    return list(pipelines)
