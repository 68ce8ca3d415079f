from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes import client
from kubernetes.client import ApiException

from k8s_backup_invoker.k8s import (
    KubernetesAuthenticationError,
    create_or_patch,
    error_message,
    format_api_exception_message,
    is_not_found,
    is_subset,
    load_kubernetes_clients,
    meta_namespace_key,
    object_field,
    sanitize_dns_label,
    to_plain,
)


def test_load_kubernetes_clients_with_in_cluster_mode_uses_incluster_auth(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_incluster_config = Mock()
    load_kube_config = Mock()
    api_client = Mock()
    custom_api = Mock()

    monkeypatch.setattr("k8s_backup_invoker.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("k8s_backup_invoker.k8s.config.load_kube_config", load_kube_config)
    monkeypatch.setattr("k8s_backup_invoker.k8s.client.ApiClient", Mock(return_value=api_client))
    monkeypatch.setattr("k8s_backup_invoker.k8s.client.CustomObjectsApi", Mock(return_value=custom_api))

    clients = load_kubernetes_clients(
        kubeconfig_path="~/.kube/config",
        context="ignored-context",
        in_cluster=True,
    )

    load_incluster_config.assert_called_once_with()
    load_kube_config.assert_not_called()
    assert clients.api_client is api_client
    assert clients.custom_api is custom_api


def test_load_kubernetes_clients_with_kubeconfig_mode_expands_path_and_context(monkeypatch: pytest.MonkeyPatch) -> None:
    load_kube_config = Mock()

    monkeypatch.setenv("HOME", "/tmp/kbi-home")
    monkeypatch.setattr("k8s_backup_invoker.k8s.config.load_kube_config", load_kube_config)
    monkeypatch.setattr("k8s_backup_invoker.k8s.client.ApiClient", Mock(return_value=Mock()))

    load_kubernetes_clients(
        kubeconfig_path="~/.kube/config",
        context="dev-cluster",
        in_cluster=False,
    )

    load_kube_config.assert_called_once_with(
        config_file="/tmp/kbi-home/.kube/config",
        context="dev-cluster",
    )


def test_load_kubernetes_clients_with_invalid_context_raises_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "k8s_backup_invoker.k8s.config.load_kube_config",
        Mock(side_effect=RuntimeError("context does not exist")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="context does not exist"):
        load_kubernetes_clients(
            kubeconfig_path="/etc/kbi/config",
            context="missing-context",
            in_cluster=False,
        )


def test_error_message_with_api_exception_includes_status_and_reason() -> None:
    assert error_message(ApiException(status=409, reason="Conflict")) == "API status 409 (Conflict)"
    assert error_message(RuntimeError("  ")) == "RuntimeError"


def test_is_not_found_with_api_and_plain_errors_matches_only_404() -> None:
    assert is_not_found(ApiException(status=404, reason="Not Found")) is True
    assert is_not_found(ApiException(status=403, reason="Forbidden")) is False
    assert is_not_found(RuntimeError("404")) is False


def test_format_api_exception_message_with_forbidden_error_includes_operation_and_hint() -> None:
    message = format_api_exception_message(
        operation="list backup invokers",
        hint="Check RBAC.",
        error=ApiException(status=403, reason="Forbidden"),
    )

    assert message == "Kubernetes request failed while trying to list backup invokers: API status 403 (Forbidden). Check RBAC."


def test_sanitize_dns_label_with_invalid_characters_and_overflow_returns_valid_label() -> None:
    assert sanitize_dns_label("My_App.Backup", max_length=63) == "my-app-backup"
    assert sanitize_dns_label("a" * 60 + "-tail", max_length=61) == "a" * 60
    assert sanitize_dns_label("___", max_length=10) == "kbi"


def test_object_field_with_dict_and_client_model_reads_same_path() -> None:
    as_dict = {"metadata": {"ownerReferences": [{"uid": "1"}]}}
    as_model = SimpleNamespace(metadata=SimpleNamespace(owner_references=[{"uid": "1"}]))

    assert object_field(as_dict, "metadata", "ownerReferences") == [{"uid": "1"}]
    assert object_field(as_model, "metadata", "ownerReferences") == [{"uid": "1"}]
    assert object_field(as_dict, "status", "phase") is None


def test_meta_namespace_key_with_cluster_scoped_object_omits_namespace() -> None:
    assert meta_namespace_key({"metadata": {"name": "web", "namespace": "apps"}}) == "apps/web"
    assert meta_namespace_key({"metadata": {"name": "kbi-trigger-schedule"}}) == "kbi-trigger-schedule"


def test_to_plain_with_client_model_returns_camel_case_dict() -> None:
    model = client.V1ObjectMeta(
        name="web",
        owner_references=[client.V1OwnerReference(api_version="apps/v1", kind="Deployment", name="web", uid="uid-1")],
    )

    plain = to_plain(model)

    assert plain == {
        "name": "web",
        "ownerReferences": [{"apiVersion": "apps/v1", "kind": "Deployment", "name": "web", "uid": "uid-1"}],
    }


def test_is_subset_with_server_defaulted_fields_ignores_extra_keys() -> None:
    desired = {"spec": {"schedule": "*/5 * * * *", "containers": [{"name": "trigger", "args": ["a", "b"]}]}}
    existing = {
        "spec": {
            "schedule": "*/5 * * * *",
            "concurrencyPolicy": "Allow",
            "containers": [{"name": "trigger", "args": ["a", "b"], "terminationMessagePath": "/dev/termination-log"}],
        }
    }

    assert is_subset(desired, existing) is True
    assert is_subset({"spec": {"schedule": "0 * * * *"}}, existing) is False
    assert is_subset({"spec": {"containers": [{"args": ["b", "a"]}]}}, existing) is False


def test_create_or_patch_with_missing_object_creates_it() -> None:
    create = Mock()
    patch = Mock()

    outcome = create_or_patch(
        desired={"metadata": {"name": "x"}},
        read=Mock(side_effect=ApiException(status=404, reason="Not Found")),
        create=create,
        patch=patch,
    )

    assert outcome == "created"
    create.assert_called_once_with({"metadata": {"name": "x"}})
    patch.assert_not_called()


def test_create_or_patch_with_drifted_object_patches_it() -> None:
    patch = Mock()

    outcome = create_or_patch(
        desired={"spec": {"suspend": True}},
        read=Mock(return_value={"spec": {"suspend": False}}),
        create=Mock(),
        patch=patch,
    )

    assert outcome == "patched"
    patch.assert_called_once_with({"spec": {"suspend": True}})


def test_create_or_patch_with_matching_object_changes_nothing() -> None:
    create = Mock()
    patch = Mock()

    outcome = create_or_patch(
        desired={"spec": {"suspend": False}},
        read=Mock(return_value={"spec": {"suspend": False}, "status": {}}),
        create=create,
        patch=patch,
    )

    assert outcome == "unchanged"
    create.assert_not_called()
    patch.assert_not_called()


def test_create_or_patch_with_read_failure_propagates_error() -> None:
    with pytest.raises(ApiException):
        create_or_patch(
            desired={},
            read=Mock(side_effect=ApiException(status=403, reason="Forbidden")),
            create=Mock(),
            patch=Mock(),
        )
