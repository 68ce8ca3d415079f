from __future__ import annotations

from pathlib import Path
from typing import Any
import os

from kubernetes.client import ApiException
import streamlit as st
import yaml

from k8s_backup_invoker.config import ControllerConfig, ensure_directories
from k8s_backup_invoker.constants import (
    API_GROUP,
    API_VERSION_V1BETA1,
    CONDITION_TRUE,
    KIND_BACKUP_SESSION,
    LABEL_INVOKER_KIND,
    LABEL_INVOKER_NAME,
    PLURALS,
    REASON_BACKEND_SECRET_NOT_AVAILABLE,
    REASON_REPOSITORY_NOT_AVAILABLE,
    REASON_TARGET_NOT_AVAILABLE,
    REASON_TRIGGER_SCHEDULE_FAILED,
    REASON_UNABLE_TO_CHECK_BACKEND_SECRET,
    REASON_UNABLE_TO_CHECK_REPOSITORY,
    REASON_UNABLE_TO_CHECK_TARGET,
    SESSION_PHASE_SUCCEEDED,
)
from k8s_backup_invoker.errors import InvokerError
from k8s_backup_invoker.invoker import INVOKER_KINDS, BackupInvoker, backup_invoker_from_object
from k8s_backup_invoker.k8s import (
    KubernetesClients,
    format_api_exception_message,
    load_kubernetes_clients,
    object_field,
)
from k8s_backup_invoker.trigger import build_trigger_schedule, trigger_schedule_name

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_REASON_HINTS: dict[str, str] = {
    REASON_REPOSITORY_NOT_AVAILABLE: "Create the Repository referenced by the invoker in the same namespace.",
    REASON_UNABLE_TO_CHECK_REPOSITORY: "Verify the controller can get repositories in this namespace.",
    REASON_BACKEND_SECRET_NOT_AVAILABLE: "Create the storage secret named in the Repository backend.",
    REASON_UNABLE_TO_CHECK_BACKEND_SECRET: "Verify the controller can get secrets in this namespace.",
    REASON_TARGET_NOT_AVAILABLE: "Deploy the backup target or fix the target reference on the invoker.",
    REASON_UNABLE_TO_CHECK_TARGET: "Check that the target kind is supported and watched by the controller.",
    REASON_TRIGGER_SCHEDULE_FAILED: "Review controller RBAC for cronjobs, roles and service accounts.",
}


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "clients": None,
        "invokers": [],
        "sessions": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _actionable_next_step(reason: str, message: str) -> str:
    normalized = message.strip() or reason
    hint = _REASON_HINTS.get(reason)
    if hint is None:
        return normalized
    return f"{normalized} | Next step: {hint}"


def _invoker_ready(invoker: BackupInvoker) -> bool:
    conditions = [condition for _, condition in invoker.conditions.items()]
    return bool(conditions) and all(condition.status == CONDITION_TRUE for condition in conditions)


def _build_invoker_rows(
    invokers: list[BackupInvoker],
    last_success_map: dict[tuple[str, str, str], str] | None = None,
) -> list[dict[str, str]]:
    last_success_map = last_success_map or {}
    rows: list[dict[str, str]] = []
    for invoker in invokers:
        targets = [f"{target.ref.kind}/{target.ref.name}" for target in invoker.targets if target.ref is not None]
        rows.append(
            {
                "kind": invoker.kind,
                "namespace": invoker.namespace,
                "name": invoker.name,
                "schedule": invoker.schedule or "unset",
                "paused": "yes" if invoker.paused else "no",
                "repository": invoker.repository or "unset",
                "targets": ",".join(targets) or "none",
                "ready": "yes" if _invoker_ready(invoker) else "no",
                "trigger_schedule": trigger_schedule_name(invoker.name),
                "last_successful_backup_at": last_success_map.get(
                    (invoker.namespace, invoker.kind.lower(), invoker.name), "never"
                ),
            }
        )
    return rows


def _build_condition_rows(invoker: BackupInvoker) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for target, condition in invoker.conditions.items():
        actionable_message = "No follow-up action required."
        if condition.status != CONDITION_TRUE:
            actionable_message = _actionable_next_step(condition.reason, condition.message)
        rows.append(
            {
                "target": f"{target.kind}/{target.name}" if target is not None else "",
                "type": condition.type,
                "status": condition.status,
                "reason": condition.reason,
                "last_transition_time": condition.last_transition_time,
                "actionable_message": actionable_message,
            }
        )
    return rows


def _last_success_map(sessions: list[dict[str, Any]]) -> dict[tuple[str, str, str], str]:
    """Latest succeeded BackupSession per ``(namespace, invoker kind, invoker name)``."""
    latest: dict[tuple[str, str, str], str] = {}
    for session in sessions:
        if object_field(session, "status", "phase") != SESSION_PHASE_SUCCEEDED:
            continue
        labels = object_field(session, "metadata", "labels") or {}
        invoker_name = labels.get(LABEL_INVOKER_NAME)
        created_at = object_field(session, "metadata", "creationTimestamp")
        if not invoker_name or not created_at:
            continue
        key = (
            str(object_field(session, "metadata", "namespace") or ""),
            str(labels.get(LABEL_INVOKER_KIND, "")),
            str(invoker_name),
        )
        # RFC 3339 timestamps in UTC sort lexically.
        if str(created_at) > latest.get(key, ""):
            latest[key] = str(created_at)
    return latest


def _build_session_rows(sessions: list[dict[str, Any]]) -> list[dict[str, str]]:
    rows = []
    for session in sessions:
        labels = object_field(session, "metadata", "labels") or {}
        rows.append(
            {
                "namespace": str(object_field(session, "metadata", "namespace") or ""),
                "name": str(object_field(session, "metadata", "name") or ""),
                "invoker": f"{labels.get(LABEL_INVOKER_KIND, '')}/{labels.get(LABEL_INVOKER_NAME, '')}",
                "phase": str(object_field(session, "status", "phase") or "Pending"),
                "created_at": str(object_field(session, "metadata", "creationTimestamp") or ""),
            }
        )
    return sorted(rows, key=lambda row: row["created_at"], reverse=True)


def _trigger_schedule_preview(invoker: BackupInvoker, *, image: str, image_pull_secrets: tuple[str, ...] = ()) -> str:
    manifest = build_trigger_schedule(
        invoker,
        image=image,
        service_account_name=trigger_schedule_name(invoker.name),
        image_pull_secrets=image_pull_secrets,
    )
    return yaml.safe_dump(manifest, sort_keys=False)


def _list_invokers(clients: KubernetesClients, *, namespace: str = "") -> list[BackupInvoker]:
    invokers: list[BackupInvoker] = []
    for kind in INVOKER_KINDS:
        if namespace:
            response = clients.custom_api.list_namespaced_custom_object(
                API_GROUP, API_VERSION_V1BETA1, namespace, PLURALS[kind]
            )
        else:
            response = clients.custom_api.list_cluster_custom_object(API_GROUP, API_VERSION_V1BETA1, PLURALS[kind])
        for obj in response.get("items") or []:
            invokers.append(backup_invoker_from_object(clients.custom_api, kind, obj))
    return sorted(invokers, key=lambda invoker: (invoker.namespace, invoker.kind, invoker.name))


def _list_backup_sessions(clients: KubernetesClients, *, namespace: str = "") -> list[dict[str, Any]]:
    plural = PLURALS[KIND_BACKUP_SESSION]
    if namespace:
        response = clients.custom_api.list_namespaced_custom_object(API_GROUP, API_VERSION_V1BETA1, namespace, plural)
    else:
        response = clients.custom_api.list_cluster_custom_object(API_GROUP, API_VERSION_V1BETA1, plural)
    return list(response.get("items") or [])


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("KBI_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to an existing file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        return f"{source_label} is missing required field(s): {', '.join(missing_fields)}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def main() -> None:
    st.set_page_config(page_title="K8s Backup Invoker", layout="wide")
    _initialize_state()

    base_config = ControllerConfig()
    ensure_directories(base_config)

    st.title("K8s Backup Invoker")
    st.caption("Inspect backup invokers, their dependency conditions, trigger schedules and backup sessions.")

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(_default_auth_mode()),
    )
    context = st.sidebar.text_input("Kubernetes context (optional)", value="")
    kubeconfig_path_input = "~/.kube/config"
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER
            try:
                clients = load_kubernetes_clients(
                    kubeconfig_path=None if in_cluster else kubeconfig_path_input,
                    context=context or None,
                    in_cluster=in_cluster,
                )
            except RuntimeError as error:
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")
            else:
                st.session_state.connected = True
                st.session_state.clients = clients
                st.session_state.connection = {"auth_mode": auth_mode, "context": context or None}
                st.session_state.invokers = []
                st.session_state.sessions = []
                st.success("Connected to Kubernetes cluster.")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.connection = {}
        st.session_state.invokers = []
        st.session_state.sessions = []

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to inspect backup invokers.")
        return

    clients = st.session_state.clients

    st.subheader("Backup Invokers")
    namespace_input = st.text_input("Namespace (optional)", value=base_config.namespace)
    if st.button("Refresh invokers"):
        with st.spinner("Listing backup invokers..."):
            try:
                st.session_state.invokers = _list_invokers(clients, namespace=namespace_input.strip())
                st.session_state.sessions = _list_backup_sessions(clients, namespace=namespace_input.strip())
            except (ApiException, InvokerError) as error:
                st.error(
                    format_api_exception_message(
                        operation="list backup invokers",
                        hint=(
                            "Verify the connected identity can list backupconfigurations, "
                            "backupbatches and backupsessions."
                        ),
                        error=error,
                    )
                )
            else:
                if not st.session_state.invokers:
                    st.warning("No backup invokers were found for the current namespace.")

    invokers: list[BackupInvoker] = st.session_state.invokers
    sessions: list[dict[str, Any]] = st.session_state.sessions
    if invokers:
        st.dataframe(
            _build_invoker_rows(invokers, _last_success_map(sessions)),
            use_container_width=True,
            hide_index=True,
        )

        labels = [f"{invoker.kind} {invoker.namespace}/{invoker.name}" for invoker in invokers]
        label_to_invoker = dict(zip(labels, invokers, strict=False))
        selected_label = st.selectbox("Inspect invoker", options=labels)
        selected = label_to_invoker[selected_label]

        st.markdown("**Conditions**")
        condition_rows = _build_condition_rows(selected)
        if condition_rows:
            st.dataframe(condition_rows, use_container_width=True, hide_index=True)
        else:
            st.info("The controller has not reported conditions for this invoker yet.")

        st.markdown("**Trigger schedule**")
        st.code(
            _trigger_schedule_preview(
                selected,
                image=base_config.trigger_image,
                image_pull_secrets=base_config.image_pull_secrets,
            ),
            language="yaml",
        )
    else:
        st.info("Click 'Refresh invokers' to load backup invokers.")

    st.subheader("Recent Backup Sessions")
    session_rows = _build_session_rows(sessions)[:100]
    if session_rows:
        st.dataframe(session_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No backup sessions found yet.")


if __name__ == "__main__":
    main()
