from __future__ import annotations

import threading
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.leaderelection.leaderelectionrecord import LeaderElectionRecord

from k8s_backup_invoker.leader import (
    LeaderElectionConfig,
    LeaderElectionGate,
    LeaderElector,
    leader_lock_name,
)


class _FakeClock:
    def __init__(self, now: float = 1_800_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _LockStore:
    def __init__(self) -> None:
        self.record: LeaderElectionRecord | None = None


class _FakeLock:
    """In-memory stand-in for a ConfigMap lock shared by every replica."""

    def __init__(self, name: str, namespace: str, identity: str, store: _LockStore) -> None:
        self.name = name
        self.namespace = namespace
        self.identity = identity
        self.store = store
        self.partitioned = False

    def get(self, name: str, namespace: str):
        if self.partitioned:
            return False, SimpleNamespace(status=500, reason="connection refused")
        if self.store.record is None:
            return False, SimpleNamespace(status=404)
        record = self.store.record
        return True, LeaderElectionRecord(
            record.holder_identity, record.lease_duration, record.acquire_time, record.renew_time
        )

    def create(self, name: str, namespace: str, election_record: LeaderElectionRecord) -> bool:
        if self.partitioned or self.store.record is not None:
            return False
        self.store.record = election_record
        return True

    def update(self, name: str, namespace: str, updated_record: LeaderElectionRecord) -> bool:
        if self.partitioned:
            return False
        self.store.record = updated_record
        return True


def _elector(identity: str, store: _LockStore, clock: _FakeClock) -> tuple[LeaderElector, _FakeLock, Mock, Mock]:
    lock = _FakeLock("lock-deployment-web", "apps", identity, store)
    started = Mock()
    stopped = Mock()
    elector = LeaderElector(
        LeaderElectionConfig(lock=lock),
        on_started_leading=started,
        on_stopped_leading=stopped,
        clock=clock,
    )
    return elector, lock, started, stopped


@pytest.mark.parametrize(
    ("lease_duration", "renew_deadline", "retry_period"),
    [(10, 10, 2), (15, 2, 2), (15, 10, 0.5)],
)
def test_leader_election_config_with_inconsistent_timings_raises_value_error(
    lease_duration: float, renew_deadline: float, retry_period: float
) -> None:
    with pytest.raises(ValueError):
        LeaderElectionConfig(
            lock=Mock(),
            lease_duration=lease_duration,
            renew_deadline=renew_deadline,
            retry_period=retry_period,
        )


def test_leader_lock_name_with_workload_returns_kind_scoped_name() -> None:
    assert leader_lock_name("Deployment", "web") == "lock-deployment-web"


def test_tick_with_absent_lock_creates_it_and_starts_leading() -> None:
    store = _LockStore()
    elector, _, started, _ = _elector("pod-a", store, _FakeClock())

    assert elector.tick() is True

    started.assert_called_once_with()
    assert store.record is not None
    assert store.record.holder_identity == "pod-a"
    assert store.record.lease_duration == "15"


def test_tick_with_renewing_leader_keeps_acquire_time() -> None:
    store = _LockStore()
    clock = _FakeClock()
    elector, _, started, _ = _elector("pod-a", store, clock)
    elector.tick()
    acquired = store.record.acquire_time  # type: ignore[union-attr]

    clock.now += 2
    elector.tick()

    assert store.record.acquire_time == acquired  # type: ignore[union-attr]
    assert store.record.renew_time != acquired  # type: ignore[union-attr]
    started.assert_called_once_with()


def test_tick_with_unexpired_foreign_lease_stays_follower() -> None:
    store = _LockStore()
    clock = _FakeClock()
    leader, _, _, _ = _elector("pod-a", store, clock)
    follower, _, started, _ = _elector("pod-b", store, clock)
    leader.tick()

    clock.now += 14
    assert follower.tick() is False

    assert follower.observed_holder == "pod-a"
    started.assert_not_called()


def test_tick_with_empty_holder_takes_over_immediately() -> None:
    store = _LockStore()
    store.record = LeaderElectionRecord("", "15", "2026-10-19T10:00:00+00:00", "2026-10-19T10:00:00+00:00")
    elector, _, started, _ = _elector("pod-a", store, _FakeClock())

    assert elector.tick() is True
    started.assert_called_once_with()


def test_tick_with_lock_read_error_does_not_acquire() -> None:
    store = _LockStore()
    elector, lock, started, _ = _elector("pod-a", store, _FakeClock())
    lock.partitioned = True

    assert elector.tick() is False
    started.assert_not_called()
    assert store.record is None


def test_tick_with_lease_taken_by_other_holder_steps_down_and_keeps_campaigning() -> None:
    store = _LockStore()
    clock = _FakeClock()
    elector, _, started, stopped = _elector("pod-a", store, clock)
    elector.tick()

    clock.now += 2
    store.record = LeaderElectionRecord("pod-b", "15", "x", "y")
    assert elector.tick() is False
    stopped.assert_called_once_with()

    clock.now += 16
    assert elector.tick() is True
    assert started.call_count == 2


def test_run_with_stop_event_steps_down_on_shutdown() -> None:
    store = _LockStore()
    elector, _, _, stopped = _elector("pod-a", store, _FakeClock())
    elector.tick()
    stop_event = threading.Event()
    stop_event.set()

    elector.run(stop_event)

    stopped.assert_called_once_with()
    assert elector.is_leader is False


def test_replicas_with_partitioned_leader_never_overlap_and_fail_over_within_bound() -> None:
    store = _LockStore()
    clock = _FakeClock()
    replicas = [_elector(identity, store, clock) for identity in ("pod-a", "pod-b", "pod-c")]
    electors = [replica[0] for replica in replicas]
    locks = {replica[0].identity: replica[1] for replica in replicas}

    start = clock.now
    partitioned_at: float | None = None
    last_renew_of_lost_leader: float | None = None
    first_leader: str | None = None
    takeover_at: float | None = None

    for step in range(0, 80):
        clock.now = start + step
        if step % 2 == 0:
            for elector in electors:
                elector.tick()
                leaders = [candidate.identity for candidate in electors if candidate.is_leader]
                assert len(leaders) <= 1

        leaders = [candidate.identity for candidate in electors if candidate.is_leader]
        if first_leader is None and leaders:
            first_leader = leaders[0]
        if step == 20 and partitioned_at is None:
            assert leaders == [first_leader]
            last_renew_of_lost_leader = clock.now
            locks[first_leader].partitioned = True  # type: ignore[index]
            partitioned_at = clock.now
        if partitioned_at is not None and takeover_at is None and leaders and leaders[0] != first_leader:
            takeover_at = clock.now

    assert first_leader == "pod-a"
    assert takeover_at is not None
    assert last_renew_of_lost_leader is not None
    renew_deadline_passed_at = last_renew_of_lost_leader + 10
    assert takeover_at - renew_deadline_passed_at <= (15 - 10) + 2


def test_gate_with_single_replica_workload_runs_scheduler_without_election() -> None:
    context = Mock()
    lock_factory = Mock()
    gate = LeaderElectionGate(
        workload_kind="StatefulSet",
        workload_name="db",
        namespace="apps",
        identity="db-0",
        context=context,
        lock_factory=lock_factory,
    )
    stop_event = threading.Event()
    stop_event.set()

    gate.run(stop_event)

    assert gate.requires_election is False
    context.start.assert_called_once_with()
    context.stop.assert_called_once_with()
    lock_factory.assert_not_called()


def test_gate_with_multi_replica_workload_gates_scheduler_on_leadership() -> None:
    context = Mock()
    store = _LockStore()
    gate = LeaderElectionGate(
        workload_kind="Deployment",
        workload_name="web",
        namespace="apps",
        identity="web-1",
        context=context,
        lock_factory=lambda name, namespace, identity: _FakeLock(name, namespace, identity, store),
    )

    elector = gate.build_elector()
    elector.tick()

    assert gate.requires_election is True
    assert elector.config.lock.name == "lock-deployment-web"
    context.start.assert_called_once_with()
    context.stop.assert_not_called()
