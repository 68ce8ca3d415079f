from __future__ import annotations

from contextlib import contextmanager
import copy
import logging
import threading
from typing import Any, Callable, Iterator

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from croniter import croniter
from kubernetes.client import ApiException

from .constants import (
    API_GROUP,
    API_VERSION_V1ALPHA1,
    CHECK_SCHEDULE,
    EVENT_REASON_FAILED_SCHEDULED_BACKUP,
    EVENT_REASON_FAILED_SETUP,
    EVENT_REASON_FAILED_TO_CHECK,
    KIND_DAEMONSET,
    KIND_REPOSITORY,
    KIND_SIDECAR_BACKUP,
    KIND_STATEFULSET,
    LABEL_MANAGED_BY,
    MANAGED_BY_VALUE,
    PLURALS,
)
from .errors import ConfigurationError
from .events import EventRecorder
from .k8s import KubernetesClients, error_message, is_not_found, object_field
from .models import ObjectReference, SchedulerOptions
from .options import backend_provider
from .restic import BackupExecutor

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = "backup"
CHECK_JOB_ID = "check"
SCHEDULER_TIMEZONE = "UTC"


def repository_name(kind: str, name: str, pod_name: str = "", node_name: str = "") -> str:
    prefix = kind.lower()
    if kind == KIND_STATEFULSET:
        return f"{prefix}-{pod_name}"
    if kind == KIND_DAEMONSET:
        return f"{prefix}-{name}-{node_name}"
    return f"{prefix}-{name}"


def restic_hostname(kind: str, pod_name: str = "", node_name: str = "") -> str:
    if kind == KIND_STATEFULSET:
        return pod_name
    if kind == KIND_DAEMONSET:
        return node_name
    return "host-0"


def validate_schedule(schedule: str) -> None:
    if not schedule.strip() or not croniter.is_valid(schedule):
        raise ConfigurationError(f"invalid backup schedule {schedule!r}")
    # Cron macros such as @daily pass croniter but not CronTrigger.
    try:
        CronTrigger.from_crontab(schedule, timezone=SCHEDULER_TIMEZONE)
    except ValueError as error:
        raise ConfigurationError(f"invalid backup schedule {schedule!r}: {error}") from error


class RunLock:
    """Single-slot token shared by the backup and check actions of one process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[bool]:
        acquired = self._lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()


def _default_scheduler() -> BackgroundScheduler:
    return BackgroundScheduler(timezone=SCHEDULER_TIMEZONE)


class SchedulerContext:
    """Owns the run lock and the cron registrations of the in-process scheduler.

    ``start`` and ``stop`` may be called repeatedly as leadership comes and goes;
    each start builds a fresh scheduler. Stopping never waits for, or cancels, a
    run that is already executing.
    """

    def __init__(
        self,
        *,
        name: str,
        schedule: str,
        backup_action: Callable[[], None],
        check_action: Callable[[], None],
        check_schedule: str = CHECK_SCHEDULE,
        lock: RunLock | None = None,
        scheduler_factory: Callable[[], Any] = _default_scheduler,
    ) -> None:
        validate_schedule(schedule)
        self.name = name
        self.schedule = schedule
        self.check_schedule = check_schedule
        self.backup_action = backup_action
        self.check_action = check_action
        self.lock = lock or RunLock()
        self._scheduler_factory = scheduler_factory
        self._scheduler: Any | None = None
        self._guard = threading.Lock()

    @property
    def running(self) -> bool:
        with self._guard:
            return self._scheduler is not None

    def start(self) -> None:
        with self._guard:
            if self._scheduler is not None:
                return
            scheduler = self._scheduler_factory()
            scheduler.add_job(
                self.run_backup_once,
                trigger=CronTrigger.from_crontab(self.schedule, timezone=SCHEDULER_TIMEZONE),
                id=BACKUP_JOB_ID,
                replace_existing=True,
            )
            scheduler.add_job(
                self.run_check_once,
                trigger=CronTrigger.from_crontab(self.check_schedule, timezone=SCHEDULER_TIMEZONE),
                id=CHECK_JOB_ID,
                replace_existing=True,
            )
            scheduler.start()
            self._scheduler = scheduler
        logger.info("Started backup scheduler for %s with schedule %r", self.name, self.schedule)

    def stop(self) -> None:
        with self._guard:
            scheduler, self._scheduler = self._scheduler, None
        if scheduler is None:
            return
        scheduler.shutdown(wait=False)
        logger.info("Stopped backup scheduler for %s", self.name)

    def configure(self, schedule: str) -> None:
        validate_schedule(schedule)
        with self._guard:
            self.schedule = schedule
            if self._scheduler is not None:
                self._scheduler.add_job(
                    self.run_backup_once,
                    trigger=CronTrigger.from_crontab(schedule, timezone=SCHEDULER_TIMEZONE),
                    id=BACKUP_JOB_ID,
                    replace_existing=True,
                )
        logger.info("Reconfigured backup schedule for %s to %r", self.name, schedule)

    def run_backup_once(self) -> bool:
        return self._run_exclusive("backup", self.backup_action)

    def run_check_once(self) -> bool:
        return self._run_exclusive("check", self.check_action)

    def _run_exclusive(self, action: str, run: Callable[[], None]) -> bool:
        with self.lock.hold() as acquired:
            if not acquired:
                logger.warning("Skipping %s schedule for %s: another run is in progress", action, self.name)
                return False
            logger.info("Acquired run lock for %s of %s", action, self.name)
            try:
                run()
            except Exception as error:  # pylint: disable=broad-except
                logger.error("Scheduled %s for %s failed: %s", action, self.name, error_message(error))
            return True


class SidecarBackupRunner:
    """Backup and check actions of the legacy in-pod scheduler for one policy."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        options: SchedulerOptions,
        executor: BackupExecutor,
        recorder: EventRecorder,
    ) -> None:
        self.clients = clients
        self.options = options
        self.executor = executor
        self.recorder = recorder

    @property
    def repository_name(self) -> str:
        return repository_name(
            self.options.workload_kind,
            self.options.workload_name,
            self.options.pod_name,
            self.options.node_name,
        )

    def read_policy(self) -> dict[str, Any] | None:
        try:
            return self.clients.custom_api.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION_V1ALPHA1,
                namespace=self.options.namespace,
                plural=PLURALS[KIND_SIDECAR_BACKUP],
                name=self.options.policy_name,
            )
        except ApiException as error:
            if is_not_found(error):
                return None
            raise

    def read_repository(self) -> dict[str, Any] | None:
        try:
            return self.clients.custom_api.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION_V1ALPHA1,
                namespace=self.options.namespace,
                plural=PLURALS[KIND_REPOSITORY],
                name=self.repository_name,
            )
        except ApiException as error:
            if is_not_found(error):
                return None
            raise

    def build_context(self, *, scheduler_factory: Callable[[], Any] = _default_scheduler) -> SchedulerContext:
        policy = self.read_policy()
        if policy is None:
            raise ConfigurationError(
                f"{KIND_SIDECAR_BACKUP} {self.options.namespace}/{self.options.policy_name} does not exist"
            )
        try:
            return SchedulerContext(
                name=f"{self.options.namespace}/{self.options.policy_name}",
                schedule=str(object_field(policy, "spec", "schedule") or ""),
                backup_action=self.backup,
                check_action=self.check,
                scheduler_factory=scheduler_factory,
            )
        except ConfigurationError as error:
            self.recorder.warning(
                _policy_ref(policy),
                reason=EVENT_REASON_FAILED_SETUP,
                message=f"failed to setup backup. Error: {error}",
            )
            raise

    def policy_event_handler(self, context: SchedulerContext) -> Callable[..., None]:
        """Build the watch-event handler that reschedules backups when the policy schedule changes."""

        def reconfigure(obj: Any) -> None:
            if object_field(obj, "metadata", "name") != self.options.policy_name:
                return
            schedule = str(object_field(obj, "spec", "schedule") or "")
            if not schedule or schedule == context.schedule:
                return
            try:
                context.configure(schedule)
            except ConfigurationError as error:
                self.recorder.warning(_policy_ref(obj), reason=EVENT_REASON_FAILED_SETUP, message=str(error))

        def on_policy_event(event: dict[str, Any], **_: Any) -> None:
            if event.get("type") == "DELETED":
                return
            reconfigure(event.get("object") or {})

        return on_policy_event

    def backup(self) -> None:
        policy = self.read_policy()
        if policy is None:
            logger.info("%s %s/%s no longer exists", KIND_SIDECAR_BACKUP, self.options.namespace, self.options.policy_name)
            return
        if object_field(policy, "spec", "paused"):
            logger.info("%s %s/%s is paused", KIND_SIDECAR_BACKUP, self.options.namespace, self.options.policy_name)
            return
        try:
            repository = self._run_backup(policy)
        except Exception as error:
            self.recorder.warning(_policy_ref(policy), reason=EVENT_REASON_FAILED_SCHEDULED_BACKUP, message=error_message(error))
            raise
        logger.info(
            "Backup of %s/%s stored in Repository %s",
            self.options.namespace,
            self.options.policy_name,
            object_field(repository, "metadata", "name"),
        )

    def check(self) -> None:
        repository = self.read_repository()
        if repository is None:
            return
        try:
            self.executor.run_check()
        except Exception as error:
            message = (
                f"Repository check failed for workload {self.options.workload_kind} "
                f"{self.options.namespace}/{self.options.workload_name}. Reason: {error_message(error)}"
            )
            self.recorder.warning(_repository_ref(repository), reason=EVENT_REASON_FAILED_TO_CHECK, message=message)
            raise

    def ensure_repository(self, policy: dict[str, Any], prefix: str) -> dict[str, Any]:
        existing = self.read_repository()
        if existing is not None:
            return existing
        backend = copy.deepcopy(object_field(policy, "spec", "backend") or {})
        provider = backend_provider(backend)
        if prefix and provider != "rest":
            backend[provider]["subPath" if provider == "local" else "prefix"] = prefix
        body = {
            "apiVersion": f"{API_GROUP}/{API_VERSION_V1ALPHA1}",
            "kind": KIND_REPOSITORY,
            "metadata": {
                "name": self.repository_name,
                "namespace": self.options.namespace,
                "labels": {
                    LABEL_MANAGED_BY: MANAGED_BY_VALUE,
                    "workload-kind": self.options.workload_kind,
                    "workload-name": self.options.workload_name,
                },
            },
            "spec": {"backend": backend},
        }
        logger.info("Creating Repository %s/%s", self.options.namespace, self.repository_name)
        return self.clients.custom_api.create_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION_V1ALPHA1,
            namespace=self.options.namespace,
            plural=PLURALS[KIND_REPOSITORY],
            body=body,
        )

    def _run_backup(self, policy: dict[str, Any]) -> dict[str, Any]:
        backend = object_field(policy, "spec", "backend") or {}
        secret_name = backend.get("storageSecretName")
        if not secret_name:
            raise ConfigurationError("missing repository secret name")
        secret = self.clients.core_api.read_namespaced_secret(name=secret_name, namespace=self.options.namespace)
        prefix = self.executor.setup_environment(backend, secret, self.options.smart_prefix)
        self.executor.init_repository_if_absent()
        repository = self.ensure_repository(policy, prefix)
        self.executor.run_backup(policy, repository)
        return repository


def _policy_ref(policy: Any) -> ObjectReference:
    return ObjectReference(
        api_version=str(object_field(policy, "apiVersion") or f"{API_GROUP}/{API_VERSION_V1ALPHA1}"),
        kind=KIND_SIDECAR_BACKUP,
        namespace=str(object_field(policy, "metadata", "namespace") or ""),
        name=str(object_field(policy, "metadata", "name") or ""),
        uid=str(object_field(policy, "metadata", "uid") or ""),
    )


def _repository_ref(repository: Any) -> ObjectReference:
    return ObjectReference(
        api_version=str(object_field(repository, "apiVersion") or f"{API_GROUP}/{API_VERSION_V1ALPHA1}"),
        kind=KIND_REPOSITORY,
        namespace=str(object_field(repository, "metadata", "namespace") or ""),
        name=str(object_field(repository, "metadata", "name") or ""),
        uid=str(object_field(repository, "metadata", "uid") or ""),
    )
