# executor.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .cache import hash_directory
from .errors import PublishError, RunCancelled, StepFailure
from .model import JobStep, PipelineDefinition, StepKind
from .registry import RegistryPublisher
from .result import PublishReport, Status, StepOutcome
from .shell import CommandRunner, ShellRunner, build_env
from .ui.console import Console, get_console

DEFAULT_CONTAINERIZE = 'docker build -t "$PIPELANE_IMAGE" .'
CANCELLED = "Cancelled"


@dataclass(frozen=True)
class PipelineExecution:
    """What one pass over a pipeline's steps produced."""
    outcomes: Tuple[StepOutcome, ...]
    not_executed: Tuple[str, ...]
    published: Tuple[str, ...]
    image_tag: Optional[str] = None
    failure: str = ""

    @property
    def succeeded(self) -> bool:
        return all(o.ok for o in self.outcomes) and not self.not_executed


CONTEXT_EXCLUDES = ("**/node_modules/**",)


def _dockerignore(context_dir: Path) -> List[str]:
    """.dockerignore entries as globs. Re-include (`!`) lines are not supported and are skipped."""
    path = context_dir / ".dockerignore"
    if not path.is_file():
        return []
    out: List[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith(("#", "!")):
            continue
        line = line.strip("/")
        out.extend([line, f"{line}/**"])
    return out


def content_tag(context_dir: Path) -> str:
    """Tag derived from what the image build can see: no node_modules, nothing .dockerignore drops."""
    excludes = list(CONTEXT_EXCLUDES) + _dockerignore(context_dir)
    return "sha-" + hash_directory(context_dir, excludes)[:12]


class JobGraph:
    """
    Executes one pipeline's steps strictly in order, fail-fast.

    Each step runs in its own working directory (passed to the child
    process, never chdir'd) and hands back exit status + captured output.
    The Publish step pushes to every registry target independently.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        publisher: Optional[RegistryPublisher] = None,
        console: Optional[Console] = None,
    ):
        self.runner = runner or ShellRunner()
        self.publisher = publisher
        self.console = console or get_console()

    # ---- helpers ----

    def _step_dir(self, step: JobStep, working_root: Path) -> Path:
        return (working_root / (step.cwd or ".")).resolve()

    def _run_command(
        self,
        pipeline: PipelineDefinition,
        step: JobStep,
        cmd: str,
        working_root: Path,
        run_vars: dict,
        cancel: Optional[threading.Event],
    ) -> StepOutcome:
        cwd = self._step_dir(step, working_root)
        if not cwd.is_dir():
            return StepOutcome(
                name=step.name,
                kind=step.kind,
                status=Status.FAILED,
                reason=f"working directory not found: {cwd}",
            )

        env = build_env(pipeline.env, step.env, run_vars)
        try:
            res = self.runner(cmd, cwd=cwd, env=env, cancel=cancel)
        except OSError as e:
            return StepOutcome(name=step.name, kind=step.kind, status=Status.FAILED, reason=f"could not start: {e}")

        if res.ok:
            return StepOutcome(
                name=step.name,
                kind=step.kind,
                status=Status.SUCCEEDED,
                exit_code=0,
                stdout=res.stdout,
                stderr=res.stderr,
                duration=res.duration,
            )

        failure = StepFailure(
            pipeline=pipeline.name,
            step=step.name,
            cmd=cmd,
            exit_code=res.exit_code,
            stdout=res.stdout,
            stderr=res.stderr,
        )
        return StepOutcome(
            name=step.name,
            kind=step.kind,
            status=Status.FAILED,
            exit_code=res.exit_code,
            stdout=res.stdout,
            stderr=res.stderr,
            duration=res.duration,
            reason=str(failure),
        )

    def _publish(
        self,
        pipeline: PipelineDefinition,
        step: JobStep,
        local_image: str,
        tag: str,
        cancel: Optional[threading.Event],
    ) -> StepOutcome:
        if self.publisher is None:
            return StepOutcome(name=step.name, kind=step.kind, status=Status.FAILED, reason="no registry publisher configured")

        started = time.monotonic()
        reports: List[PublishReport] = []

        def on_retry(reference: str, attempt: int, delay: float) -> None:
            self.console.print_retry(pipeline.name, reference, attempt, delay)

        # every target is attempted even if an earlier one failed
        for target in pipeline.registries:
            target_tag = target.tag_for(tag)
            try:
                res = self.publisher.publish(local_image, target, target_tag, cancel=cancel, on_retry=on_retry)
            except PublishError as e:
                self.console.print_publish_failure(pipeline.name, target.reference(target_tag), e.kind.value, e.message)
                reports.append(
                    PublishReport(
                        target=target.name,
                        success=False,
                        error_kind=e.kind.value,
                        attempts=e.attempts,
                        message=e.message,
                    )
                )
                continue
            except RunCancelled:
                # pushes that already completed stay published
                reports.append(
                    PublishReport(target=target.name, success=False, error_kind=CANCELLED, message="run cancelled")
                )
                break
            self.console.print_publish(pipeline.name, res.reference, res.attempts)
            reports.append(
                PublishReport(
                    target=target.name,
                    success=True,
                    reference=res.reference,
                    digest=res.digest,
                    attempts=res.attempts,
                )
            )

        failed = [r for r in reports if not r.success]
        reason = ""
        if failed:
            ok = len(reports) - len(failed)
            reason = f"published to {ok}/{len(reports)} targets; failed: " + ", ".join(
                f"{r.target} ({r.error_kind})" for r in failed
            )
        return StepOutcome(
            name=step.name,
            kind=step.kind,
            status=Status.FAILED if failed else Status.SUCCEEDED,
            duration=time.monotonic() - started,
            reason=reason,
            publishes=tuple(reports),
        )

    # ---- public API ----

    def execute(
        self,
        pipeline: PipelineDefinition,
        working_root: str | Path,
        *,
        exact_cache_hit: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> PipelineExecution:
        root = Path(working_root).resolve()
        outcomes: List[StepOutcome] = []
        tag: Optional[str] = None
        local_image: Optional[str] = None
        skip_install = exact_cache_hit and pipeline.cache is not None and pipeline.cache.skip_install_on_hit
        run_vars = {"PIPELANE_PIPELINE": pipeline.name}

        for idx, step in enumerate(pipeline.steps):
            remaining = tuple(s.name for s in pipeline.steps[idx:])
            if cancel is not None and cancel.is_set():
                return PipelineExecution(tuple(outcomes), remaining, (), tag, failure="cancelled")

            if step.kind is StepKind.INSTALL and step.cache_bound and skip_install:
                self.console.print_step_skipped(pipeline.name, step.name, "exact cache hit")
                outcomes.append(StepOutcome(step.name, step.kind, Status.SKIPPED, reason="exact cache hit"))
                continue

            self.console.print_step(pipeline.name, step.name)

            try:
                if step.kind is StepKind.CONTAINERIZE:
                    # computed once per run; every registry target reuses it
                    tag = content_tag(self._step_dir(step, root))
                    local_image = f"pipelane/{pipeline.name.lower()}:{tag}"
                    run_vars.update({"PIPELANE_IMAGE": local_image, "PIPELANE_IMAGE_TAG": tag})
                    self.console.print_debug(f"[{pipeline.name}] run variables: {run_vars}")
                    outcome = self._run_command(
                        pipeline, step, step.run or DEFAULT_CONTAINERIZE, root, run_vars, cancel
                    )
                elif step.kind is StepKind.PUBLISH:
                    outcome = self._publish(pipeline, step, local_image or "", tag or "", cancel)
                else:
                    outcome = self._run_command(pipeline, step, step.run, root, run_vars, cancel)
            except RunCancelled as e:
                outcomes.append(StepOutcome(step.name, step.kind, Status.FAILED, reason=f"cancelled: {e}"))
                return PipelineExecution(tuple(outcomes), remaining[1:], (), tag, failure="cancelled")

            outcomes.append(outcome)
            if not outcome.ok:
                self.console.print_step_failure(
                    pipeline.name, step.name, outcome.stderr or outcome.reason, outcome.exit_code
                )
                published = tuple(r.reference for r in outcome.publishes if r.success and r.reference)
                cancelled = any(r.error_kind == CANCELLED for r in outcome.publishes)
                return PipelineExecution(
                    tuple(outcomes),
                    remaining[1:],
                    published,
                    tag,
                    failure="cancelled" if cancelled else f"step '{step.name}' failed",
                )

        published = tuple(r.reference for o in outcomes for r in o.publishes if r.success and r.reference)
        return PipelineExecution(tuple(outcomes), (), published, tag)
