from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Collection

from .constants import (
    CONDITION_BACKEND_SECRET_FOUND,
    CONDITION_BACKUP_TARGET_FOUND,
    CONDITION_FALSE,
    CONDITION_REPOSITORY_FOUND,
    CONDITION_TRIGGER_SCHEDULE_CREATED,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    REASON_BACKEND_SECRET_AVAILABLE,
    REASON_BACKEND_SECRET_NOT_AVAILABLE,
    REASON_REPOSITORY_AVAILABLE,
    REASON_REPOSITORY_NOT_AVAILABLE,
    REASON_TARGET_AVAILABLE,
    REASON_TARGET_NOT_AVAILABLE,
    REASON_TRIGGER_SCHEDULE_CREATED,
    REASON_TRIGGER_SCHEDULE_FAILED,
    REASON_UNABLE_TO_CHECK_BACKEND_SECRET,
    REASON_UNABLE_TO_CHECK_REPOSITORY,
    REASON_UNABLE_TO_CHECK_TARGET,
)
from .k8s import error_message
from .models import TargetRef

if TYPE_CHECKING:
    from .invoker import BackupInvoker


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    reason: str
    message: str = ""
    observed_generation: int = 0
    last_transition_time: str = ""

    def same_content(self, other: Condition) -> bool:
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
            and self.observed_generation == other.observed_generation
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Condition:
        return cls(
            type=str(raw.get("type", "")),
            status=str(raw.get("status", CONDITION_UNKNOWN)),
            reason=str(raw.get("reason", "")),
            message=str(raw.get("message", "") or ""),
            observed_generation=int(raw.get("observedGeneration") or 0),
            last_transition_time=str(raw.get("lastTransitionTime", "") or ""),
        )


class ConditionSet:
    """Conditions keyed by ``(type, target)``; one entry per key, last write wins."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, TargetRef | None], Condition] = {}

    def get(self, condition_type: str, target: TargetRef | None = None) -> Condition | None:
        return self._entries.get((condition_type, target))

    def set(self, condition: Condition, target: TargetRef | None = None) -> bool:
        key = (condition.type, target)
        current = self._entries.get(key)
        if current is not None and current.same_content(condition):
            return False
        transition_time = condition.last_transition_time or _utc_now_iso()
        if current is not None and current.status == condition.status:
            transition_time = current.last_transition_time or transition_time
        self._entries[key] = replace(condition, last_transition_time=transition_time)
        return True

    def retain_targets(self, targets: Collection[TargetRef]) -> bool:
        """Drop per-target conditions of targets the invoker no longer lists."""
        stale = [key for key in self._entries if key[1] is not None and key[1] not in targets]
        for key in stale:
            del self._entries[key]
        return bool(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def items(self) -> list[tuple[TargetRef | None, Condition]]:
        return [(target, condition) for (_, target), condition in self._entries.items()]

    def to_status(self) -> dict[str, Any]:
        invoker_conditions: list[dict[str, Any]] = []
        per_target: dict[TargetRef, list[dict[str, Any]]] = {}
        for target, condition in self.items():
            if target is None:
                invoker_conditions.append(condition.to_dict())
            else:
                per_target.setdefault(target, []).append(condition.to_dict())
        return {
            "conditions": invoker_conditions,
            "targets": [
                {"ref": target.to_dict(), "conditions": conditions}
                for target, conditions in per_target.items()
            ],
        }

    @classmethod
    def from_status(cls, status: dict[str, Any] | None) -> ConditionSet:
        conditions = cls()
        status = status or {}
        for raw in status.get("conditions") or []:
            condition = Condition.from_dict(raw)
            conditions._entries[(condition.type, None)] = condition
        for target_status in status.get("targets") or []:
            raw_ref = target_status.get("ref") or {}
            target = TargetRef(
                api_version=str(raw_ref.get("apiVersion", "")),
                kind=str(raw_ref.get("kind", "")),
                name=str(raw_ref.get("name", "")),
            )
            for raw in target_status.get("conditions") or []:
                condition = Condition.from_dict(raw)
                conditions._entries[(condition.type, target)] = condition
        return conditions


def set_repository_found(invoker: BackupInvoker, status: str, error: BaseException | None = None) -> bool:
    namespace, name = invoker.namespace, invoker.repository
    if status == CONDITION_TRUE:
        reason, message = REASON_REPOSITORY_AVAILABLE, f"Repository {namespace}/{name} exist."
    elif status == CONDITION_FALSE:
        reason, message = REASON_REPOSITORY_NOT_AVAILABLE, f"Repository {namespace}/{name} does not exist."
    else:
        reason = REASON_UNABLE_TO_CHECK_REPOSITORY
        message = f"Failed to check whether the Repository {namespace}/{name} exist or not. Reason: {_reason(error)}"
    return invoker.set_condition(_condition(invoker, CONDITION_REPOSITORY_FOUND, status, reason, message))


def set_backend_secret_found(
    invoker: BackupInvoker,
    secret_name: str,
    status: str,
    error: BaseException | None = None,
) -> bool:
    namespace = invoker.namespace
    if status == CONDITION_TRUE:
        reason, message = REASON_BACKEND_SECRET_AVAILABLE, f"Backend Secret {namespace}/{secret_name} exist."
    elif status == CONDITION_FALSE:
        reason = REASON_BACKEND_SECRET_NOT_AVAILABLE
        message = f"Backend Secret {namespace}/{secret_name} does not exist."
    else:
        reason = REASON_UNABLE_TO_CHECK_BACKEND_SECRET
        message = (
            f"Failed to check whether the Backend Secret {namespace}/{secret_name} exist or not. "
            f"Reason: {_reason(error)}"
        )
    return invoker.set_condition(_condition(invoker, CONDITION_BACKEND_SECRET_FOUND, status, reason, message))


def set_backup_target_found(
    invoker: BackupInvoker,
    target: TargetRef,
    status: str,
    error: BaseException | None = None,
) -> bool:
    described = f"{target.api_version} {target.kind} {invoker.namespace}/{target.name}"
    if status == CONDITION_TRUE:
        reason, message = REASON_TARGET_AVAILABLE, f"Backup target {described} found."
    elif status == CONDITION_FALSE:
        reason, message = REASON_TARGET_NOT_AVAILABLE, f"Backup target {described} does not exist."
    else:
        reason = REASON_UNABLE_TO_CHECK_TARGET
        message = f"Failed to check whether backup target {described} exist or not. Reason: {_reason(error)}"
    return invoker.set_condition(
        _condition(invoker, CONDITION_BACKUP_TARGET_FOUND, status, reason, message),
        target=target,
    )


def set_trigger_schedule_created(
    invoker: BackupInvoker,
    status: str,
    error: BaseException | None = None,
) -> bool:
    if status == CONDITION_TRUE:
        reason, message = REASON_TRIGGER_SCHEDULE_CREATED, "Successfully created backup triggering CronJob."
    else:
        reason = REASON_TRIGGER_SCHEDULE_FAILED
        message = f"Failed to create backup triggering CronJob. Reason: {_reason(error)}"
    return invoker.set_condition(_condition(invoker, CONDITION_TRIGGER_SCHEDULE_CREATED, status, reason, message))


def _condition(invoker: BackupInvoker, condition_type: str, status: str, reason: str, message: str) -> Condition:
    return Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        observed_generation=invoker.generation,
    )


def _reason(error: BaseException | None) -> str:
    return error_message(error) if error is not None else "unknown error"


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
