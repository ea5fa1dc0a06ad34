# trigger.py
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Tuple

from .model import ChangeSet, PipelineDefinition, normalize_path


# ---------------------------------------------------------------------
# Glob matching
# ---------------------------------------------------------------------
#   **      any number of path segments (including none)
#   *       anything except "/"
#   ?       one character except "/"
#   dir/**  everything below dir/
#   !pat    exclude paths matched by pat
# ---------------------------------------------------------------------


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern:
    pat = normalize_path(pattern)
    out: List[str] = []
    i = 0
    n = len(pat)
    while i < n:
        c = pat[i]
        if c == "*":
            if pat.startswith("**", i):
                i += 2
                if i < n and pat[i] == "/":
                    # "**/" also matches zero directories
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(path: str, pattern: str) -> bool:
    return _compile(pattern).match(normalize_path(path)) is not None


def matches(path: str, patterns: Sequence[str]) -> bool:
    """True if a positive pattern matches `path` and no `!` pattern excludes it."""
    positive = [p for p in patterns if not p.startswith("!")]
    negative = [p[1:] for p in patterns if p.startswith("!")]
    if not any(glob_match(path, p) for p in positive):
        return False
    return not any(glob_match(path, p) for p in negative)


# ---------------------------------------------------------------------
# Pipeline selection
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerDecision:
    pipeline: str
    selected: bool
    reason: str
    matched: Optional[Tuple[str, str]] = None  # (glob, path)


def _first_match(change_set: ChangeSet, patterns: Sequence[str]) -> Optional[Tuple[str, str]]:
    for path in change_set:
        if not matches(path, patterns):
            continue
        for p in patterns:
            if not p.startswith("!") and glob_match(path, p):
                return p, path
    return None


def decide(change_set: ChangeSet, pipeline: PipelineDefinition) -> TriggerDecision:
    if change_set.empty:
        if pipeline.always_run:
            return TriggerDecision(pipeline.name, True, "always run (empty change-set)")
        return TriggerDecision(pipeline.name, False, "empty change-set")

    hit = _first_match(change_set, pipeline.triggers)
    if hit is None:
        return TriggerDecision(pipeline.name, False, f"no match for {list(pipeline.triggers)}")
    glob, path = hit
    return TriggerDecision(pipeline.name, True, f"{path} matched {glob}", matched=hit)


def explain(change_set: ChangeSet, pipelines: Iterable[PipelineDefinition]) -> List[TriggerDecision]:
    return [decide(change_set, p) for p in pipelines]


def match(change_set: ChangeSet, pipelines: Iterable[PipelineDefinition]) -> List[PipelineDefinition]:
    """
    Select the pipelines a change-set triggers, in declaration order.

    Selecting nothing is a valid outcome, not an error.
    """
    return [p for p in pipelines if decide(change_set, p).selected]
