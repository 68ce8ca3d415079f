from __future__ import annotations

import pytest

from k8s_backup_invoker.errors import ConfigurationError
from k8s_backup_invoker.models import TargetInfo, TargetRef
from k8s_backup_invoker.options import (
    ExtraOptions,
    backend_provider,
    backup_options_for_target,
    restore_options_for_host,
    setup_options_for_repository,
)


def test_backend_provider_with_multiple_backends_prefers_first_in_search_order() -> None:
    assert backend_provider({"gcs": {"bucket": "a"}, "local": {"mountPath": "/repo"}}) == "local"
    assert backend_provider({"rest": {"url": "http://restic:8000"}}) == "rest"


def test_backend_provider_without_backend_raises_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        backend_provider({"storageSecretName": "creds"})


def test_setup_options_for_repository_with_s3_backend_reads_bucket_prefix_and_endpoint() -> None:
    repository = {
        "spec": {
            "backend": {
                "s3": {
                    "bucket": "backups",
                    "prefix": "team/a",
                    "endpoint": "https://minio.local",
                    "region": "us-east-1",
                    "maxConnections": 4,
                }
            }
        }
    }

    setup = setup_options_for_repository(repository, ExtraOptions(scratch_dir="/scratch", enable_cache=True))

    assert setup.provider == "s3"
    assert setup.bucket == "backups"
    assert setup.path == "team/a"
    assert setup.endpoint == "https://minio.local"
    assert setup.region == "us-east-1"
    assert setup.max_connections == 4
    assert setup.scratch_dir == "/scratch"
    assert setup.enable_cache is True


def test_setup_options_for_repository_with_local_backend_uses_mount_path_and_sub_path() -> None:
    setup = setup_options_for_repository(
        {"spec": {"backend": {"local": {"mountPath": "/safe/data", "subPath": "apps"}}}},
        ExtraOptions(),
    )

    assert setup.bucket == "/safe/data"
    assert setup.path == "apps"


def test_setup_options_for_repository_with_rest_backend_has_no_prefix() -> None:
    setup = setup_options_for_repository({"spec": {"backend": {"rest": {"url": "http://restic:8000"}}}}, ExtraOptions())

    assert setup.bucket == "http://restic:8000"
    assert setup.path == ""


def test_setup_options_for_repository_with_missing_container_raises_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="does not define container"):
        setup_options_for_repository({"spec": {"backend": {"azure": {"prefix": "x"}}}}, ExtraOptions())


def test_backup_options_for_target_with_target_copies_paths_and_retention() -> None:
    target = TargetInfo(
        ref=TargetRef(api_version="apps/v1", kind="Deployment", name="web"),
        backup_model="sidecar",
        paths=("/data",),
        exclude=("*.tmp",),
        args=("--one-file-system",),
    )

    options = backup_options_for_target(target, {"keepLast": 3}, ExtraOptions(host="host-0"))

    assert options.host == "host-0"
    assert options.backup_paths == ("/data",)
    assert options.exclude == ("*.tmp",)
    assert options.args == ("--one-file-system",)
    assert options.retention_policy == {"keepLast": 3}


def test_backup_options_for_target_without_target_keeps_host_and_retention_only() -> None:
    options = backup_options_for_target(None, None, ExtraOptions(host="node-a"))

    assert options.host == "node-a"
    assert options.backup_paths == ()
    assert options.retention_policy == {}


def test_restore_options_for_host_with_named_host_rule_wins_over_catch_all() -> None:
    rules = [
        {"paths": ["/all"]},
        {"targetHosts": ["db-1"], "sourceHost": "db-0", "paths": ["/db"]},
        {"paths": ["/later"]},
    ]

    options = restore_options_for_host("db-1", rules)

    assert options.source_host == "db-0"
    assert options.restore_paths == ("/db",)


def test_restore_options_for_host_with_only_catch_all_rules_keeps_last_one() -> None:
    rules = [
        {"paths": ["/first"]},
        {"targetHosts": ["other"], "paths": ["/other"]},
        {"paths": ["/second"], "snapshots": ["abc123"]},
    ]

    options = restore_options_for_host("web-0", rules)

    assert options.host == "web-0"
    assert options.source_host == "web-0"
    assert options.restore_paths == ("/second",)
    assert options.snapshots == ("abc123",)


def test_restore_options_for_host_without_matching_rule_returns_empty_options() -> None:
    options = restore_options_for_host("web-0", [{"targetHosts": ["db-0"], "paths": ["/db"]}])

    assert options.host == ""
    assert options.restore_paths == ()
