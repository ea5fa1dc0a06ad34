import threading
import time

import pytest

from pipelane.dsl import registry
from pipelane.errors import PublishError, PublishErrorKind, RunCancelled
from pipelane.registry import DockerRegistryClient, EnvSecretStore, RegistryPublisher, classify_failure
from pipelane.shell import CommandResult

TRANSIENT = PublishErrorKind.TRANSIENT_NETWORK_ERROR
AUTH = PublishErrorKind.AUTHENTICATION_FAILED
CONFLICT = PublishErrorKind.TAG_CONFLICT

ECR = registry("123.dkr.ecr.us-east-1.amazonaws.com", "api", credential="REG_TOKEN", username="AWS")


def test_transient_failures_are_retried_until_success(make_publisher, sleeps, registry_client):
    client = registry_client({ECR.host: [TRANSIENT, TRANSIENT]})
    result = make_publisher(client).publish("pipelane/api:sha-1", ECR, "latest")

    assert result.success is True
    assert result.attempts == 3
    assert result.reference == f"{ECR.host}/api:latest"
    assert client.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_transient_failures_give_up_after_max_attempts(make_publisher, sleeps, registry_client):
    client = registry_client({ECR.host: [TRANSIENT] * 5})
    with pytest.raises(PublishError) as excinfo:
        make_publisher(client, max_attempts=3).publish("img", ECR, "latest")

    assert excinfo.value.kind is TRANSIENT
    assert excinfo.value.attempts == 3
    assert excinfo.value.target == f"{ECR.host}/api:latest"
    assert sleeps == [1.0, 2.0]


@pytest.mark.parametrize("kind", [AUTH, CONFLICT, PublishErrorKind.PUSH_REJECTED])
def test_non_transient_errors_fail_immediately(make_publisher, sleeps, registry_client, kind):
    client = registry_client({ECR.host: [kind]})
    with pytest.raises(PublishError) as excinfo:
        make_publisher(client).publish("img", ECR, "latest")

    assert excinfo.value.kind is kind
    assert excinfo.value.attempts == 1
    assert client.attempts == 1
    assert sleeps == []


def test_login_uses_the_resolved_credential(make_publisher, registry_client):
    client = registry_client()
    make_publisher(client).publish("img", ECR, "latest")
    assert client.logins == [(ECR.host, "AWS", "s3cret")]


def test_missing_credential_is_an_authentication_failure(make_publisher, registry_client):
    client = registry_client()
    with pytest.raises(PublishError) as excinfo:
        make_publisher(client, environ={}).publish("img", ECR, "latest")
    assert excinfo.value.kind is AUTH
    assert client.attempts == 0


def test_anonymous_target_skips_login(make_publisher, registry_client):
    client = registry_client()
    target = registry("localhost:5000", "api")
    make_publisher(client).publish("img", target, "latest")
    assert client.logins == []
    assert client.pushed == [("img", "localhost:5000/api:latest")]


def test_credential_ref_never_holds_the_secret():
    assert "s3cret" not in repr(ECR)
    assert EnvSecretStore({"REG_TOKEN": "s3cret"}).resolve(ECR.credential) == "s3cret"


@pytest.mark.parametrize(
    "output,kind",
    [
        ("Error response from daemon: Get https://x/v2/: unauthorized: authentication required", AUTH),
        ("denied: requested access to the resource is denied", AUTH),
        ("no basic auth credentials", AUTH),
        ("tag invalid: The image tag 'latest' already exists in the 'api' repository "
         "and cannot be overwritten because the repository is immutable.", CONFLICT),
        ("net/http: TLS handshake timeout", TRANSIENT),
        ("dial tcp: lookup registry: no such host", TRANSIENT),
        ("received unexpected HTTP status: 503 Service Unavailable", TRANSIENT),
        ("manifest invalid: something odd", PublishErrorKind.PUSH_REJECTED),
    ],
)
def test_classify_failure(output, kind):
    assert classify_failure(output) is kind


class RecordingRunner:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def __call__(self, cmd, *, cwd, env, stdin=None, cancel=None):
        self.calls.append((list(cmd), stdin))
        return self.results.pop(0)


def test_docker_login_sends_secret_on_stdin_and_redacts_it():
    runner = RecordingRunner([CommandResult(1, "", "Error: hunter2 rejected: unauthorized")])
    client = DockerRegistryClient(runner)

    with pytest.raises(PublishError) as excinfo:
        client.login("registry.example.com", "bot", "hunter2")

    cmd, stdin = runner.calls[0]
    assert "hunter2" not in cmd
    assert stdin == "hunter2"
    assert excinfo.value.kind is AUTH
    assert "hunter2" not in str(excinfo.value)


def test_docker_push_tags_then_pushes_and_reads_the_digest():
    digest = "sha256:" + "c" * 64
    runner = RecordingRunner([
        CommandResult(0),
        CommandResult(0, f"abc123: Layer already exists\nlatest: digest: {digest} size: 528\n"),
    ])
    client = DockerRegistryClient(runner)

    assert client.push("pipelane/api:sha-1", "r.example.com/api:latest") == digest
    assert runner.calls[0][0] == ["docker", "tag", "pipelane/api:sha-1", "r.example.com/api:latest"]
    assert runner.calls[1][0] == ["docker", "push", "r.example.com/api:latest"]


def test_docker_push_failure_ignores_layer_progress_on_stdout():
    runner = RecordingRunner([
        CommandResult(0),
        CommandResult(1, "abc123: Layer already exists\n", "net/http: TLS handshake timeout"),
    ])
    with pytest.raises(PublishError) as excinfo:
        DockerRegistryClient(runner).push("img", "r.example.com/api:latest")
    assert excinfo.value.kind is TRANSIENT


def test_cancel_interrupts_the_backoff_wait(registry_client):
    cancel = threading.Event()
    client = registry_client({ECR.host: [TRANSIENT] * 5})
    publisher = RegistryPublisher(client, EnvSecretStore({"REG_TOKEN": "s3cret"}), backoff_seconds=30.0)

    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(RunCancelled):
            publisher.publish("img", ECR, "latest", cancel=cancel)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10
    assert client.attempts == 1


def test_login_passes_the_configured_username():
    runner = RecordingRunner([CommandResult(0)])
    DockerRegistryClient(runner).login("ghcr.io", "acme-bot", "tok")
    assert runner.calls[0][0] == ["docker", "login", "--username", "acme-bot", "--password-stdin", "ghcr.io"]
