# orchestrator.py
from __future__ import annotations

import os
import tarfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .cache import CacheHit, CacheResolver, hash_files, os_identifier
from .executor import JobGraph
from .model import ChangeSet, PipelineDefinition, validate_all
from .result import PipelineResult, RunResult, Status
from .trigger import explain
from .ui.console import Console, get_console


class Orchestrator:
    """
    Runs every pipeline a change-set triggers, each in its own lane.

    The orchestrator owns the cache resolver and job graph for the duration
    of a run. A failing lane never stops its siblings.
    """

    def __init__(
        self,
        graph: JobGraph,
        cache: Optional[CacheResolver] = None,
        *,
        console: Optional[Console] = None,
        max_workers: int | None = None,
        os_id: str | None = None,
    ):
        self.graph = graph
        self.cache = cache
        self.console = console or get_console()
        self.max_workers = max_workers
        self.os_id = os_id or os_identifier()

    # ---- one lane ----

    def _restore_cache(self, pipeline: PipelineDefinition, root: Path):
        spec = pipeline.cache
        lock_bytes = hash_files(root, spec.lockfiles)
        key = CacheResolver.resolve(lock_bytes, self.os_id, spec.domain)
        restore_keys = list(spec.restore_keys) or CacheResolver.default_restore_keys(self.os_id, spec.domain)
        self.console.print_debug(f"[{pipeline.name}] cache key {key}, restore keys {restore_keys}")
        try:
            res = self.cache.restore(key, restore_keys, working_root=root)
        except OSError as e:
            self.console.print_cache(pipeline.name, f"miss (restore error: {e})")
            return key, False, "miss"
        self.console.print_cache(pipeline.name, res.reason)
        if isinstance(res, CacheHit):
            return key, not res.fallback, "fallback-hit" if res.fallback else "hit"
        return key, False, "miss"

    def _save_cache(self, pipeline: PipelineDefinition, key: str, root: Path) -> None:
        spec = pipeline.cache
        try:
            saved = self.cache.save(key, spec.paths, working_root=root)
            self.cache.prune(f"{self.os_id}-{spec.domain}-", keep=spec.keep)
        except (OSError, tarfile.TarError) as e:
            # a cache that cannot be written never fails the pipeline
            self.console.print_error("Cache save failed", f"[{pipeline.name}] {e}")
            return
        self.console.print_cache_saved(pipeline.name, key, saved)

    def run_pipeline(
        self,
        pipeline: PipelineDefinition,
        working_root: str | Path,
        cancel: Optional[threading.Event] = None,
    ) -> PipelineResult:
        root = Path(working_root).resolve()
        self.console.print_pipeline_start(pipeline.name)

        key: Optional[str] = None
        exact = False
        cache_status = ""
        if pipeline.cache is not None and self.cache is not None:
            key, exact, cache_status = self._restore_cache(pipeline, root)

        execution = self.graph.execute(pipeline, root, exact_cache_hit=exact, cancel=cancel)

        if execution.succeeded and key is not None and not exact:
            self._save_cache(pipeline, key, root)

        return PipelineResult(
            name=pipeline.name,
            status=Status.SUCCEEDED if execution.succeeded else Status.FAILED,
            reason="" if execution.succeeded else execution.failure,
            cache=cache_status,
            outcomes=execution.outcomes,
            not_executed=execution.not_executed,
            published=execution.published,
            image_tag=execution.image_tag,
        )

    # ---- whole run ----

    def _workers(self, selected: int) -> int:
        if self.max_workers is not None:
            return max(1, self.max_workers)
        c = os.cpu_count() or 2
        return max(1, min(selected, c))

    def run(
        self,
        change_set: ChangeSet,
        pipelines: Iterable[PipelineDefinition],
        *,
        working_root: str | Path = ".",
        cancel: Optional[threading.Event] = None,
    ) -> RunResult:
        """
        Select, execute and aggregate.

        Raises ConfigurationError before anything runs if a definition is
        malformed. Zero selected pipelines is a Skipped run, not a failure.
        """
        pipelines = list(pipelines)
        validate_all(pipelines)
        cancel = cancel or threading.Event()

        decisions = explain(change_set, pipelines)
        self.console.print_plan(decisions)

        results: Dict[str, PipelineResult] = {
            d.pipeline: PipelineResult(name=d.pipeline, status=Status.SKIPPED, reason=d.reason)
            for d in decisions
        }
        selected: List[PipelineDefinition] = [p for p, d in zip(pipelines, decisions) if d.selected]
        if not selected:
            return RunResult(status=Status.SKIPPED, pipelines=results, selected=())

        with ThreadPoolExecutor(max_workers=self._workers(len(selected))) as pool:
            futures = {pool.submit(self.run_pipeline, p, working_root, cancel): p.name for p in selected}
            try:
                for fut in as_completed(futures):
                    name = futures[fut]
                    try:
                        results[name] = fut.result()
                    except Exception as e:
                        self.console.print_exception(e)
                        results[name] = PipelineResult(name=name, status=Status.FAILED, reason=f"internal error: {e}")
            except KeyboardInterrupt:
                cancel.set()
                raise

        failed = any(results[p.name].status is Status.FAILED for p in selected)
        return RunResult(
            status=Status.FAILED if failed else Status.SUCCEEDED,
            pipelines=results,
            selected=tuple(p.name for p in selected),
        )
