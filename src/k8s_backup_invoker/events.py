from __future__ import annotations

from datetime import UTC, datetime
import logging

from kubernetes import client
from kubernetes.client import ApiException

from .constants import EVENT_TYPE_WARNING
from .k8s import error_message, sanitize_dns_label
from .models import ObjectReference

logger = logging.getLogger(__name__)


class EventRecorder:
    def __init__(self, *, core_api: client.CoreV1Api, component: str) -> None:
        self.core_api = core_api
        self.component = component

    def record(self, ref: ObjectReference, *, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(tz=UTC)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{sanitize_dns_label(ref.name, max_length=52)}-",
                namespace=ref.namespace,
            ),
            involved_object=client.V1ObjectReference(
                api_version=ref.api_version,
                kind=ref.kind,
                name=ref.name,
                namespace=ref.namespace,
                uid=ref.uid or None,
            ),
            type=event_type,
            reason=reason,
            message=message,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        self.core_api.create_namespaced_event(namespace=ref.namespace, body=event)

    def warning(self, ref: ObjectReference, *, reason: str, message: str) -> ApiException | None:
        """Record a warning event, returning the API error instead of raising it."""
        logger.warning("%s %s/%s: %s", ref.kind, ref.namespace, ref.name, message)
        try:
            self.record(ref, event_type=EVENT_TYPE_WARNING, reason=reason, message=message)
        except ApiException as error:
            logger.error(
                "Failed to write event on %s %s/%s: %s",
                ref.kind,
                ref.namespace,
                ref.name,
                error_message(error),
            )
            return error
        return None
