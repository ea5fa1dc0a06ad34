# cli.py
from __future__ import annotations

import json
import subprocess
import sys
import threading
from pathlib import Path

import click

from pipelane import settings
from pipelane.cache import CacheResolver, hash_files, os_identifier
from pipelane.errors import ConfigurationError
from pipelane.executor import JobGraph
from pipelane.git import detect_change_set
from pipelane.loader import find_workflow_files, load_workflow
from pipelane.model import ChangeSet
from pipelane.orchestrator import Orchestrator
from pipelane.registry import DockerRegistryClient, EnvSecretStore, RegistryPublisher
from pipelane.result import Status
from pipelane.shell import ShellRunner
from pipelane.trigger import explain
from pipelane.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def discover_workflow(workflow_arg: str | None) -> Path:
    """Workflow from --workflow, or the single one found in the current directory."""
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipelane run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files(".")
    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  pipelane_workflow.py", "  *_workflow.py", "  pipelane*.yml"],
            suggestion="Create pipelane_workflow.py or pass --workflow.",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  pipelane run --workflow pipelane_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def collect_change_set(changed, changes_file, git_diff, compare_ref) -> ChangeSet:
    paths = list(changed)
    if changes_file:
        text = Path(changes_file).read_text(encoding="utf-8")
        paths.extend(line for line in text.splitlines() if line.strip() and not line.startswith("#"))
    if git_diff:
        paths.extend(detect_change_set(compare_ref=compare_ref))
    return ChangeSet.of(paths)


def change_set_options(f):
    f = click.option("--changed", "-c", multiple=True, help="Changed file path (repeatable)")(f)
    f = click.option("--changes-file", type=click.Path(exists=True, dir_okay=False), default=None,
                     help="File listing changed paths, one per line")(f)
    f = click.option("--git-diff/--no-git-diff", default=False, help="Add paths changed according to git")(f)
    f = click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")(f)
    f = click.option("--workflow", default=None,
                     help="Workflow file (.py or .yml; defaults to pipelane_workflow.py if present)")(f)
    return f


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces and full step output")
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """pipelane: path-triggered, cache-aware build and publish pipelines."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@change_set_options
@click.option("--root", default=".", type=click.Path(file_okay=False), help="Working root the steps run in")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Dependency cache directory")
@click.option("--workers", default=settings.WORKERS, type=int, help="Pipelines run in parallel")
@click.option("--publish-attempts", default=settings.PUBLISH_ATTEMPTS, show_default=True, type=int,
              help="Attempts per registry target for transient network errors")
@click.option("--backoff", default=settings.BACKOFF_SECONDS, show_default=True, type=float,
              help="First retry delay in seconds (doubles per attempt)")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run result as JSON")
@click.pass_context
def run(ctx, changed, changes_file, git_diff, compare_ref, workflow, root, cache_dir, workers,
        publish_attempts, backoff, as_json):
    """Run every pipeline the change-set triggers."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    cancel = threading.Event()

    try:
        pipelines = load_workflow(workflow_path)
        change_set = collect_change_set(changed, changes_file, git_diff, compare_ref)
        console.print_run_started(workflow_path.name, len(pipelines), len(change_set))

        runner = ShellRunner()
        publisher = RegistryPublisher(
            DockerRegistryClient(runner, docker=settings.DOCKER, cwd=root),
            EnvSecretStore(),
            max_attempts=publish_attempts,
            backoff_seconds=backoff,
        )
        orchestrator = Orchestrator(
            JobGraph(runner, publisher, console),
            CacheResolver(cache_dir),
            console=console,
            max_workers=workers,
            os_id=settings.OS_ID,
        )
        result = orchestrator.run(change_set, pipelines, working_root=root, cancel=cancel)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG)
    except subprocess.CalledProcessError as e:
        console.print_error("Git failed", f"{' '.join(e.cmd)} exited with {e.returncode}",
                            suggestion="Pass --changed/--changes-file instead of --git-diff.")
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        cancel.set()
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        console.print_results(result)

    if result.status is Status.FAILED:
        sys.exit(EXIT_FAILED)


@cli.command()
@change_set_options
def plan(changed, changes_file, git_diff, compare_ref, workflow):
    """Show which pipelines a change-set would run, without running them."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        pipelines = load_workflow(workflow_path)
        change_set = collect_change_set(changed, changes_file, git_diff, compare_ref)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG)

    decisions = explain(change_set, pipelines)
    click.echo(f"Changed files: {len(change_set)}")
    for d in decisions:
        mark = "run " if d.selected else "skip"
        click.echo(f"  {mark} {d.pipeline} ({d.reason})")


@cli.command("cache-key")
@click.option("--lockfile", "lockfiles", multiple=True, required=True, help="Lockfile glob (repeatable)")
@click.option("--domain", default="deps", show_default=True, help="Cache domain")
@click.option("--root", default=".", type=click.Path(file_okay=False), help="Directory the globs are relative to")
@click.option("--os", "os_id", default=None, help="OS identifier (defaults to this machine)")
def cache_key(lockfiles, domain, root, os_id):
    """Print the cache key the given lockfiles resolve to."""
    data = hash_files(root, list(lockfiles))
    click.echo(CacheResolver.resolve(data, os_id or settings.OS_ID or os_identifier(), domain))


if __name__ == "__main__":
    cli()
