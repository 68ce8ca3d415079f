from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
from typing import Any, Callable

from kubernetes import client, config
from kubernetes.client import ApiException

_serializer: client.ApiClient | None = None


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    batch_api: client.BatchV1Api
    rbac_api: client.RbacAuthorizationV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
        rbac_api=client.RbacAuthorizationV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def error_message(error: BaseException) -> str:
    if isinstance(error, ApiException):
        status = error.status if error.status is not None else "unknown"
        reason = error.reason or "no reason provided"
        return f"API status {status} ({reason})"
    message = str(error).strip()
    return message or error.__class__.__name__


def format_api_exception_message(*, operation: str, hint: str, error: BaseException) -> str:
    return f"Kubernetes request failed while trying to {operation}: {error_message(error)}. {hint}"


def sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-")
    return normalized or "kbi"


def object_field(obj: Any, *path: str) -> Any:
    """Walk ``path`` through either a plain dict or a generated client model."""
    current = obj
    for segment in path:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(segment)
        else:
            current = getattr(current, _snake_case(segment), None)
    return current


def to_plain(obj: Any) -> Any:
    global _serializer
    if _serializer is None:
        _serializer = client.ApiClient()
    return _serializer.sanitize_for_serialization(obj)


def is_subset(desired: Any, existing: Any) -> bool:
    if isinstance(desired, dict):
        if not isinstance(existing, dict):
            return False
        return all(key in existing and is_subset(value, existing[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(existing, list):
            return False
        if all(not isinstance(item, dict) for item in desired):
            return desired == existing
        return all(any(is_subset(item, candidate) for candidate in existing) for item in desired)
    return desired == existing


def create_or_patch(
    *,
    desired: dict[str, Any],
    read: Callable[[], Any],
    create: Callable[[dict[str, Any]], Any],
    patch: Callable[[dict[str, Any]], Any],
) -> str:
    """Create ``desired`` when absent, patch when it drifted, otherwise do nothing."""
    try:
        existing = read()
    except ApiException as error:
        if error.status != 404:
            raise
        create(desired)
        return "created"
    if is_subset(desired, to_plain(existing)):
        return "unchanged"
    patch(desired)
    return "patched"


def meta_namespace_key(obj: Any) -> str:
    namespace = object_field(obj, "metadata", "namespace") or ""
    name = object_field(obj, "metadata", "name") or ""
    return f"{namespace}/{name}" if namespace else name


def _snake_case(value: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", value).lower()


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
