import textwrap
from pathlib import Path

import pytest

from pipelane.errors import ConfigurationError
from pipelane.loader import find_workflow_files, load_workflow
from pipelane.model import StepKind, TagStrategy

BACKEND_YAML = """
pipelines:
  backend:
    triggers: ["api/**"]
    cache:
      domain: npm
      lockfiles: ["**/package-lock.json"]
      paths: ["~/.npm"]
    steps:
      - {kind: install, run: npm install, working-directory: api}
      - {kind: containerize, cwd: api}
      - {kind: publish}
    registries:
      - host: 123.dkr.ecr.us-east-1.amazonaws.com
        repository: api
        credential: ECR_PASSWORD
        username: AWS
      - {host: docker.io, repository: acme/api, tag_strategy: content}
  shared:
    always_run: true
    paths: "**"
    steps:
      - {kind: test, run: npm test}
"""


def _write(tmp_path, name, text):
    p = tmp_path / name
    p.write_text(textwrap.dedent(text), encoding="utf-8")
    return p


def test_yaml_document_is_parsed(tmp_path):
    backend, shared = load_workflow(_write(tmp_path, "pipelane.yml", BACKEND_YAML))

    assert backend.name == "backend"
    assert backend.triggers == ("api/**",)
    assert [s.kind for s in backend.steps] == [StepKind.INSTALL, StepKind.CONTAINERIZE, StepKind.PUBLISH]
    assert backend.steps[0].cwd == "api"
    assert backend.steps[0].cache_bound is True
    assert backend.cache.domain == "npm"
    assert backend.registries[0].credential.handle == "ECR_PASSWORD"
    assert backend.registries[1].tag_strategy is TagStrategy.CONTENT
    assert backend.registries[1].credential is None

    assert shared.always_run is True
    assert shared.triggers == ("**",)


def test_yaml_unknown_step_kind(tmp_path):
    path = _write(tmp_path, "bad.yaml", """
        pipelines:
          svc:
            triggers: ["**"]
            steps:
              - {kind: deploy, run: ./deploy.sh}
    """)
    with pytest.raises(ConfigurationError) as excinfo:
        load_workflow(path)
    assert "deploy" in str(excinfo.value)


def test_yaml_definitions_are_validated_on_load(tmp_path):
    path = _write(tmp_path, "bad.yaml", """
        pipelines:
          svc:
            triggers: ["**"]
            steps:
              - {kind: publish}
    """)
    with pytest.raises(ConfigurationError):
        load_workflow(path)


def test_yaml_without_pipelines_mapping(tmp_path):
    with pytest.raises(ConfigurationError):
        load_workflow(_write(tmp_path, "empty.yml", "jobs: {}\n"))


def test_python_workflow_with_pipelines_constant(tmp_path):
    path = _write(tmp_path, "svc_workflow.py", """
        from pipelane import wf, pipeline, build

        PIPELINES = wf(pipeline("svc", build("make"), triggers=["src/**"]))
    """)
    (p,) = load_workflow(path)
    assert p.name == "svc"
    assert p.steps[0].run == "make"


def test_python_workflow_must_return_pipelines(tmp_path):
    path = _write(tmp_path, "odd_workflow.py", """
        def workflow():
            return ["not a pipeline"]
    """)
    with pytest.raises(ConfigurationError):
        load_workflow(path)


def test_missing_workflow_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "nope.py")


def test_repository_workflow_loads():
    root = Path(__file__).resolve().parents[2]
    frontend, backend = load_workflow(root / "pipelane_workflow.py")
    assert frontend.triggers == ("app/frontend/**",)
    assert backend.triggers == ("api/**",)
    assert len(backend.registries) == 2


def test_find_workflow_files_prefers_the_default(tmp_path):
    _write(tmp_path, "other_workflow.py", "PIPELINES = []\n")
    _write(tmp_path, "pipelane_workflow.py", "PIPELINES = []\n")
    found = find_workflow_files(tmp_path)
    assert [p.name for p in found] == ["pipelane_workflow.py", "other_workflow.py"]


@pytest.mark.parametrize(
    "body",
    [
        "    env: [A=1]\n    steps:\n      - {kind: build, run: make}\n",
        "    steps:\n      - {kind: build, run: make, env: CI=true}\n",
        "    cache: {domain: npm, lockfiles: [a.lock], paths: [deps], keep: many}\n"
        "    steps:\n      - {kind: install, run: npm ci}\n",
    ],
)
def test_malformed_fields_are_configuration_errors(tmp_path, body):
    text = "pipelines:\n  svc:\n    triggers: ['**']\n" + body
    with pytest.raises(ConfigurationError):
        load_workflow(_write(tmp_path, "bad.yml", text))
