from __future__ import annotations

from unittest.mock import Mock

from kubernetes.client import ApiException

from k8s_backup_invoker.constants import EVENT_TYPE_NORMAL
from k8s_backup_invoker.events import EventRecorder
from k8s_backup_invoker.models import ObjectReference


def _ref() -> ObjectReference:
    return ObjectReference(
        api_version="backup.kbi.dev/v1beta1",
        kind="BackupConfiguration",
        namespace="apps",
        name="db",
        uid="uid-1",
    )


def test_record_with_reference_creates_event_on_involved_object() -> None:
    core_api = Mock()
    recorder = EventRecorder(core_api=core_api, component="backup-invoker-controller")

    recorder.record(_ref(), event_type=EVENT_TYPE_NORMAL, reason="Synced", message="all good")

    kwargs = core_api.create_namespaced_event.call_args.kwargs
    event = kwargs["body"]
    assert kwargs["namespace"] == "apps"
    assert event.metadata.generate_name == "db-"
    assert event.involved_object.kind == "BackupConfiguration"
    assert event.involved_object.uid == "uid-1"
    assert event.source.component == "backup-invoker-controller"
    assert event.reason == "Synced"


def test_warning_with_api_failure_returns_error_instead_of_raising() -> None:
    core_api = Mock()
    core_api.create_namespaced_event.side_effect = ApiException(status=403, reason="Forbidden")
    recorder = EventRecorder(core_api=core_api, component="backup-invoker-controller")

    error = recorder.warning(_ref(), reason="InvalidBackupConfiguration", message="bad schedule")

    assert isinstance(error, ApiException)
    assert error.status == 403


def test_warning_with_successful_write_returns_none() -> None:
    core_api = Mock()
    recorder = EventRecorder(core_api=core_api, component="sidecar-backup-scheduler")

    assert recorder.warning(_ref(), reason="FailedSetup", message="invalid schedule") is None
    assert core_api.create_namespaced_event.call_args.kwargs["body"].type == "Warning"
