from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import Any, Callable

from .constants import (
    API_GROUP,
    API_VERSION_V1BETA1,
    KIND_BACKUP_SESSION,
    LABEL_INVOKER_KIND,
    LABEL_INVOKER_NAME,
    LABEL_MANAGED_BY,
    MANAGED_BY_VALUE,
    PLURALS,
)
from .invoker import extract_backup_invoker
from .k8s import sanitize_dns_label

logger = logging.getLogger(__name__)


def backup_session_name(invoker_name: str, created_at: datetime) -> str:
    suffix = str(int(created_at.timestamp()))
    return f"{sanitize_dns_label(invoker_name, max_length=62 - len(suffix))}-{suffix}"


def create_backup_session(
    custom_api: Any,
    *,
    invoker_kind: str,
    invoker_name: str,
    namespace: str,
    clock: Callable[[], datetime] = lambda: datetime.now(tz=UTC),
) -> dict[str, Any] | None:
    """Create one backup run for the invoker, unless the invoker is paused."""
    invoker = extract_backup_invoker(custom_api, invoker_kind, invoker_name, namespace)
    if invoker.paused:
        logger.info("%s %s/%s is paused, not creating a backup session", invoker_kind, namespace, invoker_name)
        return None

    body = {
        "apiVersion": f"{API_GROUP}/{API_VERSION_V1BETA1}",
        "kind": KIND_BACKUP_SESSION,
        "metadata": {
            "name": backup_session_name(invoker_name, clock()),
            "namespace": namespace,
            "labels": {
                LABEL_MANAGED_BY: MANAGED_BY_VALUE,
                LABEL_INVOKER_KIND: invoker_kind.lower(),
                LABEL_INVOKER_NAME: invoker_name,
            },
            "ownerReferences": [invoker.object_ref.to_owner_reference()],
        },
        "spec": {
            "invoker": {
                "apiGroup": API_GROUP,
                "kind": invoker_kind,
                "name": invoker_name,
            }
        },
    }
    created = custom_api.create_namespaced_custom_object(
        group=API_GROUP,
        version=API_VERSION_V1BETA1,
        namespace=namespace,
        plural=PLURALS[KIND_BACKUP_SESSION],
        body=body,
    )
    logger.info("Created BackupSession %s/%s", namespace, body["metadata"]["name"])
    return created
