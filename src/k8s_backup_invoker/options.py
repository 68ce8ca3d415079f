from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import ConfigurationError
from .models import TargetInfo

BACKEND_PROVIDERS = ("local", "s3", "gcs", "azure", "swift", "b2", "rest")

_CONTAINER_FIELDS = {
    "local": "mountPath",
    "s3": "bucket",
    "gcs": "bucket",
    "azure": "container",
    "swift": "container",
    "b2": "bucket",
    "rest": "url",
}
_PREFIX_FIELDS = {
    "local": "subPath",
    "s3": "prefix",
    "gcs": "prefix",
    "azure": "prefix",
    "swift": "prefix",
    "b2": "prefix",
}


@dataclass(frozen=True)
class ExtraOptions:
    """Options that come from the running process rather than any policy object."""

    host: str = ""
    secret_dir: str = ""
    cacert_file: str = ""
    scratch_dir: str = "/tmp"
    enable_cache: bool = False


@dataclass(frozen=True)
class BackupOptions:
    host: str
    retention_policy: dict[str, Any] = field(default_factory=dict)
    backup_paths: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class RestoreOptions:
    host: str = ""
    source_host: str = ""
    restore_paths: tuple[str, ...] = ()
    snapshots: tuple[str, ...] = ()
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True)
class SetupOptions:
    provider: str
    bucket: str
    path: str = ""
    endpoint: str = ""
    region: str = ""
    cacert_file: str = ""
    secret_dir: str = ""
    scratch_dir: str = ""
    enable_cache: bool = False
    max_connections: int = 0


def backup_options_for_target(
    target: TargetInfo | None,
    retention_policy: dict[str, Any] | None,
    extra: ExtraOptions,
) -> BackupOptions:
    if target is None:
        return BackupOptions(host=extra.host, retention_policy=dict(retention_policy or {}))
    return BackupOptions(
        host=extra.host,
        retention_policy=dict(retention_policy or {}),
        backup_paths=target.paths,
        exclude=target.exclude,
        args=target.args,
    )


def restore_options_for_host(hostname: str, rules: list[dict[str, Any]]) -> RestoreOptions:
    """Pick the restore rule that applies to ``hostname``.

    A rule without target hosts matches every host, but later rules are still
    scanned and the last such rule is kept. The first rule whose target hosts
    name ``hostname`` wins immediately.
    """
    matched = RestoreOptions()
    for rule in rules:
        target_hosts = list(rule.get("targetHosts") or [])
        if target_hosts and hostname not in target_hosts:
            continue
        matched = RestoreOptions(
            host=hostname,
            source_host=rule.get("sourceHost") or hostname,
            restore_paths=tuple(rule.get("paths") or ()),
            snapshots=tuple(rule.get("snapshots") or ()),
            include=tuple(rule.get("include") or ()),
            exclude=tuple(rule.get("exclude") or ()),
        )
        if target_hosts:
            return matched
    return matched


def backend_provider(backend: dict[str, Any]) -> str:
    for provider in BACKEND_PROVIDERS:
        if backend.get(provider):
            return provider
    raise ConfigurationError("no storage backend is configured")


def setup_options_for_repository(repository: dict[str, Any], extra: ExtraOptions) -> SetupOptions:
    backend = (repository.get("spec") or {}).get("backend") or {}
    provider = backend_provider(backend)
    settings = backend[provider]
    bucket = str(settings.get(_CONTAINER_FIELDS[provider], "") or "")
    if not bucket:
        raise ConfigurationError(f"{provider} backend does not define {_CONTAINER_FIELDS[provider]}")
    prefix_field = _PREFIX_FIELDS.get(provider)
    return SetupOptions(
        provider=provider,
        bucket=bucket,
        path=str(settings.get(prefix_field, "") or "") if prefix_field else "",
        endpoint=str(settings.get("endpoint", "") or ""),
        region=str(settings.get("region", "") or ""),
        cacert_file=extra.cacert_file,
        secret_dir=extra.secret_dir,
        scratch_dir=extra.scratch_dir,
        enable_cache=extra.enable_cache,
        max_connections=int(settings.get("maxConnections") or 0),
    )
