from __future__ import annotations

import base64
import logging
import os
from pathlib import Path
import shutil
import subprocess
from typing import Any, Callable, Protocol

from .constants import MODEL_SIDECAR
from .k8s import object_field
from .models import TargetInfo
from .options import ExtraOptions, backend_provider, backup_options_for_target, setup_options_for_repository

logger = logging.getLogger(__name__)

RESTIC_PASSWORD_KEY = "RESTIC_PASSWORD"
GOOGLE_SERVICE_ACCOUNT_KEY = "GOOGLE_SERVICE_ACCOUNT_JSON_KEY"
CA_CERT_DATA_KEY = "CA_CERT_DATA"

RETENTION_FLAGS = {
    "keepLast": "--keep-last",
    "keepHourly": "--keep-hourly",
    "keepDaily": "--keep-daily",
    "keepWeekly": "--keep-weekly",
    "keepMonthly": "--keep-monthly",
    "keepYearly": "--keep-yearly",
}


class BackupExecutor(Protocol):
    def setup_environment(self, backend: dict[str, Any], secret: Any, prefix: str) -> str: ...

    def init_repository_if_absent(self) -> None: ...

    def run_backup(self, policy: dict[str, Any], repository: dict[str, Any]) -> None: ...

    def run_check(self) -> None: ...


class ResticCommandError(RuntimeError):
    def __init__(self, *, command: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"restic {command} failed: {normalized_reason}")
        self.command = command


class ResticExecutor:
    """Runs the restic CLI against the repository described by a backend spec."""

    def __init__(
        self,
        *,
        scratch_dir: Path,
        hostname: str = "",
        binary: str | None = None,
        runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    ) -> None:
        self.scratch_dir = scratch_dir
        self.hostname = hostname
        self.binary = binary
        self._runner = runner
        self._env: dict[str, str] = {}
        self._extra_args: list[str] = []

    @property
    def environment(self) -> dict[str, str]:
        return dict(self._env)

    def setup_environment(self, backend: dict[str, Any], secret: Any, prefix: str) -> str:
        provider = backend_provider(backend)
        setup = setup_options_for_repository(
            {"spec": {"backend": backend}},
            ExtraOptions(host=self.hostname, scratch_dir=str(self.scratch_dir)),
        )
        path = "/".join(part.strip("/") for part in (setup.path, prefix) if part and part.strip("/"))
        data = _decode_secret_data(secret)
        if RESTIC_PASSWORD_KEY not in data:
            raise ResticCommandError(command="setup", reason=f"backend secret has no {RESTIC_PASSWORD_KEY} key")

        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        environment = {key: value for key, value in data.items() if key not in {GOOGLE_SERVICE_ACCOUNT_KEY, CA_CERT_DATA_KEY}}
        extra_args: list[str] = []
        if GOOGLE_SERVICE_ACCOUNT_KEY in data:
            credentials_path = self.scratch_dir / "gcs-service-account.json"
            credentials_path.write_text(data[GOOGLE_SERVICE_ACCOUNT_KEY], encoding="utf-8")
            environment["GOOGLE_APPLICATION_CREDENTIALS"] = str(credentials_path)
        if CA_CERT_DATA_KEY in data:
            cacert_path = self.scratch_dir / "ca.crt"
            cacert_path.write_text(data[CA_CERT_DATA_KEY], encoding="utf-8")
            extra_args.extend(["--cacert", str(cacert_path)])
        if setup.max_connections:
            extra_args.extend(["--option", f"{provider}.connections={setup.max_connections}"])

        environment["RESTIC_REPOSITORY"] = _repository_url(provider, setup.bucket, path, setup.endpoint)
        environment["RESTIC_CACHE_DIR"] = str(self.scratch_dir / "restic-cache")
        self._env = environment
        self._extra_args = extra_args
        return path

    def init_repository_if_absent(self) -> None:
        completed = self._execute(["cat", "config"])
        if completed.returncode == 0:
            return
        logger.info("Initializing restic repository %s", self._env.get("RESTIC_REPOSITORY"))
        self._run(["init"])

    def run_backup(self, policy: dict[str, Any], repository: dict[str, Any]) -> None:
        spec = policy.get("spec") or {}
        target = spec.get("target") or {}
        options = backup_options_for_target(
            TargetInfo(
                ref=None,
                backup_model=MODEL_SIDECAR,
                paths=tuple(target.get("paths") or ()),
                exclude=tuple(target.get("exclude") or ()),
                args=tuple(target.get("args") or ()),
            ),
            spec.get("retentionPolicy"),
            ExtraOptions(host=self.hostname),
        )
        if not options.backup_paths:
            raise ResticCommandError(command="backup", reason="no backup paths are configured")

        command = ["backup", *options.backup_paths]
        if options.host:
            command.extend(["--host", options.host])
        for pattern in options.exclude:
            command.extend(["--exclude", pattern])
        command.extend(["--tag", f"repository={object_field(repository, 'metadata', 'name')}"])
        command.extend(options.args)
        self._run(command)

        forget = _retention_arguments(options.retention_policy)
        if forget:
            if options.host:
                forget.extend(["--host", options.host])
            self._run(["forget", *forget])

    def run_check(self) -> None:
        self._run(["check"])

    def _run(self, arguments: list[str]) -> str:
        completed = self._execute(arguments)
        if completed.returncode != 0:
            raise ResticCommandError(
                command=arguments[0],
                reason=completed.stderr.strip() or completed.stdout.strip() or "restic command failed",
            )
        return completed.stdout

    def _execute(self, arguments: list[str]) -> subprocess.CompletedProcess[str]:
        if not self._env:
            raise RuntimeError("restic environment has not been set up")
        binary = self.binary or shutil.which("restic")
        if binary is None:
            raise RuntimeError("restic is required for backups but was not found in PATH")
        environment = os.environ.copy()
        environment.update(self._env)
        return self._runner(
            [binary, *arguments, *self._extra_args],
            check=False,
            capture_output=True,
            text=True,
            env=environment,
        )


def _decode_secret_data(secret: Any) -> dict[str, str]:
    raw = object_field(secret, "data") or {}
    return {key: base64.b64decode(value).decode("utf-8") for key, value in raw.items()}


def _repository_url(provider: str, bucket: str, path: str, endpoint: str) -> str:
    if provider == "local":
        return "/".join(part for part in (bucket.rstrip("/"), path) if part)
    if provider == "s3":
        host = (endpoint or "s3.amazonaws.com").removeprefix("https://").removeprefix("http://")
        return f"s3:{host}/{bucket}/{path}".rstrip("/")
    if provider == "rest":
        return f"rest:{bucket}"
    scheme = {"gcs": "gs", "azure": "azure", "swift": "swift", "b2": "b2"}[provider]
    return f"{scheme}:{bucket}:/{path}"


def _retention_arguments(policy: dict[str, Any]) -> list[str]:
    arguments: list[str] = []
    for key, flag in RETENTION_FLAGS.items():
        if policy.get(key):
            arguments.extend([flag, str(policy[key])])
    for tag in policy.get("keepTags") or []:
        arguments.extend(["--keep-tag", str(tag)])
    if not arguments:
        return []
    if policy.get("prune"):
        arguments.append("--prune")
    if policy.get("dryRun"):
        arguments.append("--dry-run")
    return arguments
