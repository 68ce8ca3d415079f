from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Collection, Iterable, Mapping, Protocol

from .errors import TargetLookupError
from .k8s import meta_namespace_key
from .models import TargetRef

logger = logging.getLogger(__name__)


class Lister(Protocol):
    def get(self, namespace: str, name: str) -> Any | None: ...


class IndexLister:
    """Reads one workload kind out of a watch-synchronized index keyed by ``(namespace, name)``."""

    def __init__(self, index: Mapping[tuple[str, str], Collection[Any]]) -> None:
        self._index = index

    def get(self, namespace: str, name: str) -> Any | None:
        for obj in self._index.get((namespace, name), ()):
            return obj
        return None


@dataclass(frozen=True)
class WorkloadKindHandler:
    kind: str
    lister: Lister | None = None
    notify: Callable[[str], None] | None = None


class TargetDispatcher:
    """Routes target notifications and existence lookups by workload kind."""

    def __init__(self, handlers: Iterable[WorkloadKindHandler]) -> None:
        self._handlers = {handler.kind: handler for handler in handlers}

    @property
    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def notify_target_changed(self, kind: str, namespace: str, name: str) -> None:
        handler = self._handlers.get(kind)
        if handler is None or handler.lister is None or handler.notify is None:
            logger.debug("No workload handler registered for %s, skipping %s/%s", kind, namespace, name)
            return
        resource = handler.lister.get(namespace, name)
        if resource is None:
            return
        handler.notify(meta_namespace_key(resource))

    def exists_target(self, ref: TargetRef, namespace: str) -> bool:
        handler = self._handlers.get(ref.kind)
        if handler is None or handler.lister is None:
            raise TargetLookupError(f"unable to look up target {ref.api_version} {ref.kind}: kind is not supported")
        return handler.lister.get(namespace, ref.name) is not None
