from __future__ import annotations

import logging
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .constants import (
    API_GROUP,
    KIND_BACKUP_BATCH,
    KIND_BACKUP_CONFIGURATION,
    KIND_BACKUP_SESSION,
    LABEL_INVOKER_KIND,
    LABEL_INVOKER_NAME,
    LABEL_MANAGED_BY,
    MANAGED_BY_VALUE,
    PLURALS,
    TRIGGER_CLUSTER_ROLE,
)
from .k8s import create_or_patch, sanitize_dns_label
from .models import ObjectReference

logger = logging.getLogger(__name__)

TRIGGER_ROLE_RULES: list[dict[str, Any]] = [
    {
        "apiGroups": [API_GROUP],
        "resources": [PLURALS[KIND_BACKUP_SESSION]],
        "verbs": ["create", "get"],
    },
    {
        "apiGroups": [API_GROUP],
        "resources": [PLURALS[KIND_BACKUP_CONFIGURATION], PLURALS[KIND_BACKUP_BATCH]],
        "verbs": ["get"],
    },
    {
        "apiGroups": [""],
        "resources": ["events"],
        "verbs": ["create"],
    },
]


def trigger_role_binding_name(service_account_name: str) -> str:
    return sanitize_dns_label(f"{TRIGGER_CLUSTER_ROLE}-{service_account_name}", max_length=63)


def ensure_trigger_rbac(
    rbac_api: client.RbacAuthorizationV1Api,
    *,
    owner: ObjectReference,
    namespace: str,
    service_account_name: str,
    labels: dict[str, str],
) -> None:
    """Grant the trigger job's service account the right to create backup runs."""
    ensure_trigger_cluster_role(rbac_api)
    ensure_trigger_role_binding(
        rbac_api,
        owner=owner,
        namespace=namespace,
        service_account_name=service_account_name,
        labels=labels,
    )


def ensure_trigger_cluster_role(rbac_api: client.RbacAuthorizationV1Api) -> str:
    desired = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": {"name": TRIGGER_CLUSTER_ROLE, "labels": {LABEL_MANAGED_BY: MANAGED_BY_VALUE}},
        "rules": TRIGGER_ROLE_RULES,
    }
    return create_or_patch(
        desired=desired,
        read=lambda: rbac_api.read_cluster_role(name=TRIGGER_CLUSTER_ROLE),
        create=lambda body: rbac_api.create_cluster_role(body=body),
        patch=lambda body: rbac_api.patch_cluster_role(name=TRIGGER_CLUSTER_ROLE, body=body),
    )


def ensure_trigger_role_binding(
    rbac_api: client.RbacAuthorizationV1Api,
    *,
    owner: ObjectReference,
    namespace: str,
    service_account_name: str,
    labels: dict[str, str],
) -> str:
    name = trigger_role_binding_name(service_account_name)
    desired = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels,
            "ownerReferences": [owner.to_owner_reference()],
        },
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": TRIGGER_CLUSTER_ROLE,
        },
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": service_account_name,
                "namespace": namespace,
            }
        ],
    }
    return create_or_patch(
        desired=desired,
        read=lambda: rbac_api.read_namespaced_role_binding(name=name, namespace=namespace),
        create=lambda body: rbac_api.create_namespaced_role_binding(namespace=namespace, body=body),
        patch=lambda body: rbac_api.patch_namespaced_role_binding(name=name, namespace=namespace, body=body),
    )


def ensure_cluster_role_bindings_deleted(rbac_api: client.RbacAuthorizationV1Api, labels: dict[str, str]) -> int:
    """Delete cluster-scoped bindings stamped with the invoker's labels.

    Cluster-scoped objects cannot carry a namespaced owner reference, so garbage
    collection never removes them on its own.
    """
    kind = labels.get(LABEL_INVOKER_KIND)
    name = labels.get(LABEL_INVOKER_NAME)
    if not kind or not name:
        return 0
    selector = f"{LABEL_INVOKER_KIND}={kind},{LABEL_INVOKER_NAME}={name}"
    response = rbac_api.list_cluster_role_binding(label_selector=selector)
    deleted = 0
    for binding in response.items or []:
        binding_name = binding.metadata.name
        try:
            rbac_api.delete_cluster_role_binding(name=binding_name)
        except ApiException as error:
            if error.status != 404:
                raise
            continue
        logger.info("Deleted ClusterRoleBinding %s", binding_name)
        deleted += 1
    return deleted
