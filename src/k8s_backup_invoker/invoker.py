from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from croniter import croniter

from .conditions import Condition, ConditionSet
from .constants import (
    API_GROUP,
    API_VERSION_V1BETA1,
    DRIVER_RESTIC,
    FINALIZER,
    KIND_BACKUP_BATCH,
    KIND_BACKUP_CONFIGURATION,
    LABEL_INVOKER_KIND,
    LABEL_INVOKER_NAME,
    LABEL_MANAGED_BY,
    MANAGED_BY_VALUE,
    PLURALS,
    backup_model_for_kind,
)
from .errors import ConfigurationError, UnsupportedInvokerKindError
from .models import ObjectReference, RuntimeSettings, TargetInfo, TargetRef


INVOKER_KINDS = (KIND_BACKUP_CONFIGURATION, KIND_BACKUP_BATCH)


@dataclass(eq=False)
class BackupInvoker:
    """Normalized view over the policy kinds that drive a backup schedule.

    Condition and finalizer mutations are written back to the underlying custom
    object immediately, and only when they actually change something.
    """

    kind: str
    namespace: str
    name: str
    uid: str
    generation: int
    targets: list[TargetInfo]
    repository: str
    schedule: str
    driver: str
    paused: bool
    runtime_settings: RuntimeSettings
    labels: dict[str, str]
    finalizers: list[str]
    deletion_requested: bool
    conditions: ConditionSet
    custom_api: Any = field(repr=False)
    api_version: str = f"{API_GROUP}/{API_VERSION_V1BETA1}"

    @property
    def object_ref(self) -> ObjectReference:
        return ObjectReference(
            api_version=self.api_version,
            kind=self.kind,
            namespace=self.namespace,
            name=self.name,
            uid=self.uid,
        )

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.finalizers

    def validate(self) -> None:
        if not self.schedule.strip():
            raise ConfigurationError(f"{self.kind} {self.namespace}/{self.name} has no schedule")
        if not croniter.is_valid(self.schedule):
            raise ConfigurationError(
                f"{self.kind} {self.namespace}/{self.name} has an invalid schedule {self.schedule!r}"
            )

    def add_finalizer(self) -> bool:
        if self.has_finalizer:
            return False
        self._patch_finalizers([*self.finalizers, FINALIZER])
        return True

    def remove_finalizer(self) -> bool:
        if not self.has_finalizer:
            return False
        self._patch_finalizers([item for item in self.finalizers if item != FINALIZER])
        return True

    def set_condition(self, condition: Condition, target: TargetRef | None = None) -> bool:
        if not self.conditions.set(condition, target=target):
            return False
        self._patch_status(self.conditions.to_status())
        return True

    def prune_target_conditions(self) -> bool:
        current = {target.ref for target in self.targets if target.ref is not None}
        if not self.conditions.retain_targets(current):
            return False
        self._patch_status(self.conditions.to_status())
        return True

    def update_observed_generation(self) -> None:
        self._patch_status({"observedGeneration": self.generation})

    def _patch_status(self, status: dict[str, Any]) -> None:
        self.custom_api.patch_namespaced_custom_object_status(
            group=API_GROUP,
            version=API_VERSION_V1BETA1,
            namespace=self.namespace,
            plural=PLURALS[self.kind],
            name=self.name,
            body={"status": status},
        )

    def _patch_finalizers(self, finalizers: list[str]) -> None:
        self.custom_api.patch_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION_V1BETA1,
            namespace=self.namespace,
            plural=PLURALS[self.kind],
            name=self.name,
            body={"metadata": {"finalizers": finalizers}},
        )
        self.finalizers = finalizers


def extract_backup_invoker(custom_api: Any, kind: str, name: str, namespace: str) -> BackupInvoker:
    if kind not in INVOKER_KINDS:
        raise UnsupportedInvokerKindError(f"backup invoker kind {kind!r} is not supported")
    obj = custom_api.get_namespaced_custom_object(
        group=API_GROUP,
        version=API_VERSION_V1BETA1,
        namespace=namespace,
        plural=PLURALS[kind],
        name=name,
    )
    return backup_invoker_from_object(custom_api, kind, obj)


def backup_invoker_from_object(custom_api: Any, kind: str, obj: dict[str, Any]) -> BackupInvoker:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    name = str(metadata.get("name", ""))

    if kind == KIND_BACKUP_CONFIGURATION:
        raw_targets = [spec.get("target")] if spec.get("target") else []
    elif kind == KIND_BACKUP_BATCH:
        raw_targets = [member.get("target") for member in spec.get("members") or [] if member.get("target")]
    else:
        raise UnsupportedInvokerKindError(f"backup invoker kind {kind!r} is not supported")

    runtime_settings = spec.get("runtimeSettings") or {}
    labels = dict(metadata.get("labels") or {})
    labels.update(
        {
            LABEL_MANAGED_BY: MANAGED_BY_VALUE,
            LABEL_INVOKER_KIND: kind.lower(),
            LABEL_INVOKER_NAME: name,
        }
    )

    return BackupInvoker(
        kind=kind,
        api_version=str(obj.get("apiVersion") or f"{API_GROUP}/{API_VERSION_V1BETA1}"),
        namespace=str(metadata.get("namespace", "")),
        name=name,
        uid=str(metadata.get("uid", "")),
        generation=int(metadata.get("generation") or 0),
        targets=[_target_info(raw) for raw in raw_targets],
        repository=str((spec.get("repository") or {}).get("name", "")),
        schedule=str(spec.get("schedule", "") or ""),
        driver=str(spec.get("driver") or DRIVER_RESTIC),
        paused=bool(spec.get("paused", False)),
        runtime_settings=RuntimeSettings(
            pod=runtime_settings.get("pod"),
            container=runtime_settings.get("container"),
        ),
        labels=labels,
        finalizers=list(metadata.get("finalizers") or []),
        deletion_requested=metadata.get("deletionTimestamp") is not None,
        conditions=ConditionSet.from_status(obj.get("status")),
        custom_api=custom_api,
    )


def _target_info(raw: dict[str, Any]) -> TargetInfo:
    raw_ref = raw.get("ref")
    ref: TargetRef | None = None
    if raw_ref:
        ref = TargetRef(
            api_version=str(raw_ref.get("apiVersion", "")),
            kind=str(raw_ref.get("kind", "")),
            name=str(raw_ref.get("name", "")),
        )
    return TargetInfo(
        ref=ref,
        backup_model=backup_model_for_kind(ref.kind) if ref else backup_model_for_kind(""),
        paths=tuple(raw.get("paths") or ()),
        exclude=tuple(raw.get("exclude") or ()),
        args=tuple(raw.get("args") or ()),
    )
