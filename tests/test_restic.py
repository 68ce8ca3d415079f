from __future__ import annotations

import base64
from pathlib import Path
import subprocess

import pytest

from k8s_backup_invoker.restic import ResticCommandError, ResticExecutor


def _secret(**values: str) -> dict:
    return {"data": {key: base64.b64encode(value.encode("utf-8")).decode("ascii") for key, value in values.items()}}


class _FakeRunner:
    def __init__(self, failures: dict[str, str] | None = None) -> None:
        self.calls: list[list[str]] = []
        self.environments: list[dict[str, str]] = []
        self.failures = failures or {}

    def __call__(self, command: list[str], **kwargs) -> subprocess.CompletedProcess[str]:
        self.calls.append(command)
        self.environments.append(kwargs["env"])
        verb = command[1]
        if verb in self.failures:
            return subprocess.CompletedProcess(command, 1, stdout="", stderr=self.failures[verb])
        return subprocess.CompletedProcess(command, 0, stdout="ok", stderr="")


def _executor(tmp_path: Path, runner: _FakeRunner, *, hostname: str = "host-0") -> ResticExecutor:
    return ResticExecutor(scratch_dir=tmp_path / "scratch", hostname=hostname, binary="/usr/bin/restic", runner=runner)


def _policy(**spec) -> dict:
    return {"spec": {"target": {"paths": ["/data"]}, **spec}}


def test_setup_environment_with_gcs_backend_builds_repository_url_and_credentials(tmp_path: Path) -> None:
    executor = _executor(tmp_path, _FakeRunner())

    path = executor.setup_environment(
        {"gcs": {"bucket": "backups", "prefix": "/team/"}},
        _secret(RESTIC_PASSWORD="pw", GOOGLE_SERVICE_ACCOUNT_JSON_KEY='{"type": "service_account"}'),
        "apps",
    )

    environment = executor.environment
    assert path == "team/apps"
    assert environment["RESTIC_REPOSITORY"] == "gs:backups:/team/apps"
    assert environment["RESTIC_PASSWORD"] == "pw"
    assert "GOOGLE_SERVICE_ACCOUNT_JSON_KEY" not in environment
    credentials = Path(environment["GOOGLE_APPLICATION_CREDENTIALS"])
    assert credentials.read_text(encoding="utf-8") == '{"type": "service_account"}'


def test_setup_environment_with_s3_endpoint_strips_scheme(tmp_path: Path) -> None:
    executor = _executor(tmp_path, _FakeRunner())

    executor.setup_environment(
        {"s3": {"bucket": "backups", "endpoint": "https://minio.local:9000"}},
        _secret(RESTIC_PASSWORD="pw"),
        "",
    )

    assert executor.environment["RESTIC_REPOSITORY"] == "s3:minio.local:9000/backups"


def test_setup_environment_with_ca_cert_passes_cacert_argument(tmp_path: Path) -> None:
    runner = _FakeRunner()
    executor = _executor(tmp_path, runner)
    executor.setup_environment(
        {"rest": {"url": "https://restic.local"}},
        _secret(RESTIC_PASSWORD="pw", CA_CERT_DATA="-----BEGIN CERTIFICATE-----"),
        "ignored",
    )

    executor.run_check()

    assert executor.environment["RESTIC_REPOSITORY"] == "rest:https://restic.local"
    assert runner.calls[0][:2] == ["/usr/bin/restic", "check"]
    assert runner.calls[0][2] == "--cacert"


def test_setup_environment_without_password_raises_restic_command_error(tmp_path: Path) -> None:
    executor = _executor(tmp_path, _FakeRunner())

    with pytest.raises(ResticCommandError, match="RESTIC_PASSWORD"):
        executor.setup_environment({"gcs": {"bucket": "backups"}}, _secret(OTHER="x"), "")


def test_init_repository_if_absent_with_missing_repository_runs_init(tmp_path: Path) -> None:
    runner = _FakeRunner(failures={"cat": "Is there a repository at the following location?"})
    executor = _executor(tmp_path, runner)
    executor.setup_environment({"local": {"mountPath": "/repo"}}, _secret(RESTIC_PASSWORD="pw"), "apps")

    executor.init_repository_if_absent()

    assert [call[1] for call in runner.calls] == ["cat", "init"]
    assert runner.environments[0]["RESTIC_REPOSITORY"] == "/repo/apps"


def test_init_repository_if_absent_with_existing_repository_skips_init(tmp_path: Path) -> None:
    runner = _FakeRunner()
    executor = _executor(tmp_path, runner)
    executor.setup_environment({"local": {"mountPath": "/repo"}}, _secret(RESTIC_PASSWORD="pw"), "")

    executor.init_repository_if_absent()

    assert [call[1] for call in runner.calls] == ["cat"]


def test_run_backup_with_retention_policy_runs_backup_then_forget(tmp_path: Path) -> None:
    runner = _FakeRunner()
    executor = _executor(tmp_path, runner, hostname="db-0")
    executor.setup_environment({"local": {"mountPath": "/repo"}}, _secret(RESTIC_PASSWORD="pw"), "")
    policy = {
        "spec": {
            "target": {"paths": ["/data", "/config"], "exclude": ["*.tmp"], "args": ["--one-file-system"]},
            "retentionPolicy": {"keepLast": 5, "keepDaily": 7, "keepTags": ["gold"], "prune": True},
        }
    }

    executor.run_backup(policy, {"metadata": {"name": "statefulset-db-0"}})

    assert runner.calls[0][1:] == [
        "backup",
        "/data",
        "/config",
        "--host",
        "db-0",
        "--exclude",
        "*.tmp",
        "--tag",
        "repository=statefulset-db-0",
        "--one-file-system",
    ]
    assert runner.calls[1][1:] == [
        "forget",
        "--keep-last",
        "5",
        "--keep-daily",
        "7",
        "--keep-tag",
        "gold",
        "--prune",
        "--host",
        "db-0",
    ]


def test_run_backup_without_retention_policy_skips_forget(tmp_path: Path) -> None:
    runner = _FakeRunner()
    executor = _executor(tmp_path, runner)
    executor.setup_environment({"local": {"mountPath": "/repo"}}, _secret(RESTIC_PASSWORD="pw"), "")

    executor.run_backup(_policy(), {"metadata": {"name": "deployment-web"}})

    assert [call[1] for call in runner.calls] == ["backup"]


def test_run_backup_without_paths_raises_restic_command_error(tmp_path: Path) -> None:
    runner = _FakeRunner()
    executor = _executor(tmp_path, runner)
    executor.setup_environment({"local": {"mountPath": "/repo"}}, _secret(RESTIC_PASSWORD="pw"), "")

    with pytest.raises(ResticCommandError, match="no backup paths"):
        executor.run_backup({"spec": {"target": {}}}, {"metadata": {"name": "deployment-web"}})

    assert runner.calls == []


def test_run_check_with_failing_command_surfaces_stderr(tmp_path: Path) -> None:
    runner = _FakeRunner(failures={"check": "pack 1234 is damaged"})
    executor = _executor(tmp_path, runner)
    executor.setup_environment({"local": {"mountPath": "/repo"}}, _secret(RESTIC_PASSWORD="pw"), "")

    with pytest.raises(ResticCommandError, match="restic check failed: pack 1234 is damaged"):
        executor.run_check()


def test_run_check_without_environment_raises_runtime_error(tmp_path: Path) -> None:
    executor = _executor(tmp_path, _FakeRunner())

    with pytest.raises(RuntimeError, match="has not been set up"):
        executor.run_check()


def test_run_check_without_restic_binary_raises_runtime_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("k8s_backup_invoker.restic.shutil.which", lambda _name: None)
    executor = ResticExecutor(scratch_dir=tmp_path, runner=_FakeRunner())
    executor.setup_environment({"local": {"mountPath": "/repo"}}, _secret(RESTIC_PASSWORD="pw"), "")

    with pytest.raises(RuntimeError, match="not found in PATH"):
        executor.run_check()
