# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .errors import ConfigurationError
from .model import (
    CacheSpec,
    CredentialRef,
    JobStep,
    PipelineDefinition,
    RegistryTarget,
    StepKind,
    TagStrategy,
    validate_all,
)

DEFAULT_WORKFLOW = "pipelane_workflow.py"
WORKFLOW_SUFFIXES = (".py", ".yml", ".yaml")


# ----------------------------------------------------------------------
# Python workflows
# ----------------------------------------------------------------------

def _load_python(wf_path: Path) -> List[PipelineDefinition]:
    """
    The file must define either:
      - workflow() -> List[PipelineDefinition]
      - PIPELINES = [PipelineDefinition, ...]
    """
    module_name = f"pipelane_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    pipelines = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        pipelines = globals_dict["workflow"]()
    elif "PIPELINES" in globals_dict:
        pipelines = globals_dict["PIPELINES"]

    if not isinstance(pipelines, list) or not all(isinstance(p, PipelineDefinition) for p in pipelines):
        raise ConfigurationError(
            pipeline=wf_path.name,
            message="workflow must return/define a List[PipelineDefinition] "
            "(define workflow() or PIPELINES = [...])",
        )
    return pipelines


# ----------------------------------------------------------------------
# YAML documents
# ----------------------------------------------------------------------
#
# pipelines:
#   backend:
#     triggers: ["api/**"]
#     cache: {domain: npm, lockfiles: ["api/package-lock.json"], paths: ["~/.npm"]}
#     steps:
#       - {kind: install, run: npm install, cwd: api}
#       - {kind: containerize, cwd: api}
#       - {kind: publish}
#     registries:
#       - {host: 123.dkr.ecr.us-east-1.amazonaws.com, repository: api, credential: ECR_PASSWORD, username: AWS}
# ----------------------------------------------------------------------

def _as_list(name: str, value: Any, field: str) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigurationError(pipeline=name, message=f"'{field}' must be a list")
    return value


def _as_mapping(name: str, value: Any, field: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(pipeline=name, message=f"'{field}' must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


def _as_int(name: str, value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(pipeline=name, message=f"'{field}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(pipeline=name, message=f"'{field}' must be an integer") from None


def _parse_step(name: str, idx: int, raw: Any) -> JobStep:
    if not isinstance(raw, dict):
        raise ConfigurationError(pipeline=name, message=f"step #{idx + 1} must be a mapping")
    try:
        kind = StepKind(str(raw.get("kind", "")).lower())
    except ValueError:
        raise ConfigurationError(pipeline=name, message=f"step #{idx + 1} has unknown kind {raw.get('kind')!r}") from None
    return JobStep(
        kind=kind,
        name=str(raw.get("name") or kind.value),
        run=str(raw.get("run") or ""),
        cwd=raw.get("cwd") or raw.get("working-directory"),
        env=_as_mapping(name, raw.get("env"), f"steps[{idx}].env"),
        cache_bound=bool(raw.get("cached", kind is StepKind.INSTALL)),
    )


def _parse_registry(name: str, raw: Any) -> RegistryTarget:
    if not isinstance(raw, dict) or not raw.get("host") or not raw.get("repository"):
        raise ConfigurationError(pipeline=name, message="registry needs 'host' and 'repository'")
    strategy = str(raw.get("tag_strategy", "fixed")).lower()
    try:
        tag_strategy = TagStrategy(strategy)
    except ValueError:
        raise ConfigurationError(pipeline=name, message=f"unknown tag_strategy {strategy!r}") from None
    credential = raw.get("credential")
    return RegistryTarget(
        host=str(raw["host"]),
        repository=str(raw["repository"]),
        credential=CredentialRef(handle=str(credential), username=str(raw.get("username", ""))) if credential else None,
        tag_strategy=tag_strategy,
        fixed_tag=str(raw.get("tag", "latest")),
    )


def _parse_cache(name: str, raw: Any) -> CacheSpec:
    if not isinstance(raw, dict):
        raise ConfigurationError(pipeline=name, message="'cache' must be a mapping")
    return CacheSpec(
        domain=str(raw.get("domain", "")),
        lockfiles=tuple(_as_list(name, raw.get("lockfiles"), "cache.lockfiles")),
        paths=tuple(_as_list(name, raw.get("paths"), "cache.paths")),
        restore_keys=tuple(_as_list(name, raw.get("restore_keys"), "cache.restore_keys")),
        skip_install_on_hit=bool(raw.get("skip_install_on_hit", False)),
        keep=_as_int(name, raw.get("keep", 3), "cache.keep"),
    )


def parse_document(doc: Any, source: str = "<document>") -> List[PipelineDefinition]:
    if not isinstance(doc, dict) or not isinstance(doc.get("pipelines"), dict):
        raise ConfigurationError(pipeline=source, message="document needs a top-level 'pipelines' mapping")

    out: List[PipelineDefinition] = []
    for name, raw in doc["pipelines"].items():
        name = str(name)
        if not isinstance(raw, dict):
            raise ConfigurationError(pipeline=name, message="pipeline entry must be a mapping")
        steps = [_parse_step(name, i, s) for i, s in enumerate(_as_list(name, raw.get("steps"), "steps"))]
        out.append(
            PipelineDefinition(
                name=name,
                triggers=tuple(str(t) for t in _as_list(name, raw.get("triggers") or raw.get("paths"), "triggers")),
                steps=tuple(steps),
                registries=tuple(_parse_registry(name, r) for r in _as_list(name, raw.get("registries"), "registries")),
                cache=_parse_cache(name, raw["cache"]) if raw.get("cache") else None,
                env=_as_mapping(name, raw.get("env"), "env"),
                always_run=bool(raw.get("always_run", False)),
            )
        )
    return out


def _load_yaml(wf_path: Path) -> List[PipelineDefinition]:
    try:
        doc: Dict[str, Any] = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(pipeline=wf_path.name, message=f"invalid YAML: {e}") from e
    return parse_document(doc, source=wf_path.name)


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[PipelineDefinition]:
    """
    Load pipeline definitions from a .py workflow or a .yml/.yaml document.

    Definitions are validated here, so a malformed file fails before any
    pipeline is selected.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix not in WORKFLOW_SUFFIXES:
        raise ConfigurationError(pipeline=wf_path.name, message=f"unsupported workflow type: {wf_path.suffix}")

    if wf_path.suffix == ".py":
        pipelines = _load_python(wf_path)
    else:
        pipelines = _load_yaml(wf_path)

    validate_all(pipelines)
    return pipelines


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """pipelane_workflow.py first, then any other *_workflow.py / pipelane*.yml files."""
    current = Path(directory)
    found: List[Path] = []
    default = current / DEFAULT_WORKFLOW
    if default.exists():
        found.append(default)
    for pattern in ("*_workflow.py", "pipelane*.yml", "pipelane*.yaml"):
        for p in sorted(current.glob(pattern)):
            if p not in found:
                found.append(p)
    return found
