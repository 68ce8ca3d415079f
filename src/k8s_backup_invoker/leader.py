from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging
import threading
import time
from typing import Any, Callable, Protocol

from kubernetes.leaderelection.leaderelectionrecord import LeaderElectionRecord
from kubernetes.leaderelection.resourcelock.configmaplock import ConfigMapLock

from .constants import (
    LEASE_DURATION_SECONDS,
    MULTI_REPLICA_WORKLOAD_KINDS,
    RENEW_DEADLINE_SECONDS,
    RETRY_PERIOD_SECONDS,
)
from .k8s import error_message, sanitize_dns_label

logger = logging.getLogger(__name__)

JITTER_FACTOR = 1.2


class ResourceLock(Protocol):
    name: str
    namespace: str
    identity: str

    def get(self, name: str, namespace: str) -> tuple[bool, Any]: ...

    def create(self, name: str, namespace: str, election_record: LeaderElectionRecord) -> bool: ...

    def update(self, name: str, namespace: str, updated_record: LeaderElectionRecord) -> bool: ...


class SchedulerLifecycle(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


@dataclass(frozen=True)
class LeaderElectionConfig:
    lock: ResourceLock
    lease_duration: float = LEASE_DURATION_SECONDS
    renew_deadline: float = RENEW_DEADLINE_SECONDS
    retry_period: float = RETRY_PERIOD_SECONDS

    def __post_init__(self) -> None:
        if self.lease_duration <= self.renew_deadline:
            raise ValueError("lease_duration must be greater than renew_deadline")
        if self.renew_deadline <= JITTER_FACTOR * self.retry_period:
            raise ValueError("renew_deadline must be greater than retry_period*JITTER_FACTOR")
        if self.retry_period < 1:
            raise ValueError("retry_period must be at least one second")


def leader_lock_name(workload_kind: str, workload_name: str) -> str:
    return sanitize_dns_label(f"lock-{workload_kind.lower()}-{workload_name}", max_length=253)


class LeaderElector:
    """Campaigns for a lease and reports leadership transitions.

    A leader that has not renewed within ``renew_deadline`` steps down before any
    other candidate may take the lease, which it cannot do until ``lease_duration``
    has passed since it last saw the record change. After stepping down the
    elector keeps campaigning.
    """

    def __init__(
        self,
        config: LeaderElectionConfig,
        *,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.on_started_leading = on_started_leading
        self.on_stopped_leading = on_stopped_leading
        self._clock = clock
        self._leading = False
        self._last_renew: float | None = None
        self._observed_key: tuple[str | None, str | None] | None = None
        self._observed_holder: str | None = None
        self._observed_time = 0.0

    @property
    def identity(self) -> str:
        return self.config.lock.identity

    @property
    def is_leader(self) -> bool:
        return self._leading

    @property
    def observed_holder(self) -> str | None:
        return self._observed_holder

    def run(self, stop_event: threading.Event) -> None:
        try:
            while not stop_event.is_set():
                self.tick()
                stop_event.wait(self.config.retry_period)
        finally:
            if self._leading:
                self._step_down("shutting down")

    def tick(self) -> bool:
        now = self._clock()
        if self.try_acquire_or_renew(now):
            self._last_renew = now
            if not self._leading:
                self._leading = True
                logger.info("%s became leader of %s", self.identity, self.config.lock.name)
                self.on_started_leading()
        elif self._leading:
            if self._observed_holder not in (None, self.identity):
                self._step_down(f"lease is held by {self._observed_holder}")
            elif self._last_renew is None or now - self._last_renew >= self.config.renew_deadline:
                self._step_down("failed to renew lease before the deadline")
        return self._leading

    def try_acquire_or_renew(self, now: float) -> bool:
        lock = self.config.lock
        stamp = datetime.fromtimestamp(now, tz=UTC).isoformat()
        record = LeaderElectionRecord(self.identity, str(int(self.config.lease_duration)), stamp, stamp)

        found, observed = lock.get(lock.name, lock.namespace)
        if not found:
            if getattr(observed, "status", None) != 404:
                logger.error("Error retrieving resource lock %s/%s: %s", lock.namespace, lock.name, _describe(observed))
                return False
            if not lock.create(lock.name, lock.namespace, record):
                return False
            self._observe(record, now)
            return True

        if observed is None or not observed.holder_identity:
            if not lock.update(lock.name, lock.namespace, record):
                return False
            self._observe(record, now)
            return True

        key = (observed.holder_identity, observed.renew_time)
        if key != self._observed_key:
            self._observe(observed, now)

        if observed.holder_identity != self.identity and self._observed_time + self.config.lease_duration > now:
            logger.debug("Lock %s is held by %s and has not yet expired", lock.name, observed.holder_identity)
            return False

        if observed.holder_identity == self.identity:
            record.acquire_time = observed.acquire_time
        if not lock.update(lock.name, lock.namespace, record):
            return False
        self._observe(record, now)
        return True

    def _observe(self, record: LeaderElectionRecord, now: float) -> None:
        self._observed_key = (record.holder_identity, record.renew_time)
        self._observed_holder = record.holder_identity
        self._observed_time = now

    def _step_down(self, reason: str) -> None:
        self._leading = False
        logger.info("%s lost leadership of %s: %s", self.identity, self.config.lock.name, reason)
        self.on_stopped_leading()


class LeaderElectionGate:
    """Starts the in-process scheduler directly or only while holding the workload's lease."""

    def __init__(
        self,
        *,
        workload_kind: str,
        workload_name: str,
        namespace: str,
        identity: str,
        context: SchedulerLifecycle,
        lock_factory: Callable[[str, str, str], ResourceLock] = ConfigMapLock,
        lease_duration: float = LEASE_DURATION_SECONDS,
        renew_deadline: float = RENEW_DEADLINE_SECONDS,
        retry_period: float = RETRY_PERIOD_SECONDS,
    ) -> None:
        self.workload_kind = workload_kind
        self.workload_name = workload_name
        self.namespace = namespace
        self.identity = identity
        self.context = context
        self.lock_factory = lock_factory
        self.lease_duration = lease_duration
        self.renew_deadline = renew_deadline
        self.retry_period = retry_period

    @property
    def requires_election(self) -> bool:
        return self.workload_kind in MULTI_REPLICA_WORKLOAD_KINDS

    def build_elector(self) -> LeaderElector:
        lock = self.lock_factory(leader_lock_name(self.workload_kind, self.workload_name), self.namespace, self.identity)
        config = LeaderElectionConfig(
            lock=lock,
            lease_duration=self.lease_duration,
            renew_deadline=self.renew_deadline,
            retry_period=self.retry_period,
        )
        return LeaderElector(
            config,
            on_started_leading=self._on_started_leading,
            on_stopped_leading=self._on_stopped_leading,
        )

    def run(self, stop_event: threading.Event) -> None:
        if not self.requires_election:
            logger.info("%s %s runs a single replica, starting scheduler", self.workload_kind, self.workload_name)
            self.context.start()
            try:
                stop_event.wait()
            finally:
                self.context.stop()
            return
        self.build_elector().run(stop_event)

    def _on_started_leading(self) -> None:
        logger.info("Got leadership, starting backup scheduler")
        self.context.start()

    def _on_stopped_leading(self) -> None:
        logger.info("Lost leadership, stopping backup scheduler")
        self.context.stop()


def _describe(error: Any) -> str:
    if isinstance(error, BaseException):
        return error_message(error)
    return str(error)
