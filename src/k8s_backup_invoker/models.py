from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TargetRef:
    api_version: str
    kind: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.api_version}/{self.kind}/{self.name}"

    def to_dict(self) -> dict[str, str]:
        return {"apiVersion": self.api_version, "kind": self.kind, "name": self.name}


@dataclass(frozen=True)
class TargetInfo:
    ref: TargetRef | None
    backup_model: str
    paths: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class RuntimeSettings:
    pod: dict[str, Any] | None = None
    container: dict[str, Any] | None = None


@dataclass(frozen=True)
class ObjectReference:
    api_version: str
    kind: str
    namespace: str
    name: str
    uid: str

    def to_owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


@dataclass(frozen=True)
class SchedulerOptions:
    namespace: str
    policy_name: str
    workload_kind: str
    workload_name: str
    pod_name: str = ""
    node_name: str = ""
    smart_prefix: str = ""
