from __future__ import annotations

import logging
from typing import Any, Callable, MutableMapping

import kopf
from kubernetes.client import ApiException

from .conditions import (
    set_backend_secret_found,
    set_backup_target_found,
    set_repository_found,
    set_trigger_schedule_created,
)
from .constants import (
    API_GROUP,
    API_VERSION_V1ALPHA1,
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    DEPENDENCY_REQUEUE_DELAY_SECONDS,
    EVENT_REASON_INVALID_CONFIGURATION,
    EVENT_REASON_TRIGGER_SCHEDULE_FAILED,
    EVENT_REASON_WORKLOAD_TRIGGER_FAILED,
    KIND_REPOSITORY,
    MODEL_SIDECAR,
    PLURALS,
    is_default_driver,
)
from .dispatcher import TargetDispatcher
from .errors import ConfigurationError, DependencyNotReadyError, TargetLookupError, aggregate_errors
from .events import EventRecorder
from .invoker import BackupInvoker, extract_backup_invoker
from .k8s import KubernetesClients, error_message, is_not_found, object_field
from .models import TargetRef
from .rbac import ensure_cluster_role_bindings_deleted
from .trigger import TriggerScheduler

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_SECONDS = 0.005
DEFAULT_MAX_DELAY_SECONDS = 1000.0
FAILURES_MEMO_KEY = "reconcile_failures"


class BackupInvokerReconciler:
    """Drives one invoker kind from a change notification to a running trigger schedule.

    ``process`` and ``process_deletion`` run once per handler attempt and turn the
    outcome into kopf retries: a missing dependency waits a fixed delay, other
    failures back off exponentially and are given up after ``max_requeues``
    consecutive attempts. Deletion cleanup is never given up.
    """

    def __init__(
        self,
        *,
        kind: str,
        clients: KubernetesClients,
        trigger_scheduler: TriggerScheduler,
        recorder: EventRecorder,
        max_requeues: int = 5,
        requeue_delay_seconds: float = DEPENDENCY_REQUEUE_DELAY_SECONDS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    ) -> None:
        self.kind = kind
        self.clients = clients
        self.trigger_scheduler = trigger_scheduler
        self.recorder = recorder
        self.max_requeues = max_requeues
        self.requeue_delay_seconds = requeue_delay_seconds
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    def process(
        self,
        name: str,
        namespace: str,
        *,
        dispatcher: TargetDispatcher,
        memo: MutableMapping[str, Any],
    ) -> None:
        key = f"{namespace}/{name}"
        logger.info("Sync/Add/Update for %s %s", self.kind, key)
        invoker: BackupInvoker | None = None
        try:
            invoker = extract_backup_invoker(self.clients.custom_api, self.kind, name, namespace)
            self.reconcile(invoker, dispatcher)
            if not invoker.deletion_requested:
                invoker.update_observed_generation()
        except DependencyNotReadyError as error:
            memo.pop(FAILURES_MEMO_KEY, None)
            logger.info("%s, requeueing after %.0f seconds", error, self.requeue_delay_seconds)
            raise kopf.TemporaryError(str(error), delay=self.requeue_delay_seconds) from error
        except ConfigurationError as error:
            # Permanent until the object is edited; not retried.
            memo.pop(FAILURES_MEMO_KEY, None)
            if invoker is not None:
                self.recorder.warning(invoker.object_ref, reason=EVENT_REASON_INVALID_CONFIGURATION, message=str(error))
            raise kopf.PermanentError(str(error)) from error
        except ApiException as error:
            if not is_not_found(error):
                raise self._retry(key, memo, error) from error
            logger.warning("%s %s does not exist anymore", self.kind, key)
        except Exception as error:  # pylint: disable=broad-except
            raise self._retry(key, memo, error) from error
        memo.pop(FAILURES_MEMO_KEY, None)

    def process_deletion(
        self,
        name: str,
        namespace: str,
        *,
        dispatcher: TargetDispatcher,
        memo: MutableMapping[str, Any],
    ) -> None:
        key = f"{namespace}/{name}"
        logger.info("Cleanup for %s %s", self.kind, key)
        try:
            invoker = extract_backup_invoker(self.clients.custom_api, self.kind, name, namespace)
            if invoker.has_finalizer:
                self.cleanup(invoker, dispatcher)
        except ApiException as error:
            if not is_not_found(error):
                raise self._retry(key, memo, error, give_up=False) from error
        except Exception as error:  # pylint: disable=broad-except
            raise self._retry(key, memo, error, give_up=False) from error
        memo.pop(FAILURES_MEMO_KEY, None)

    def reconcile(self, invoker: BackupInvoker, dispatcher: TargetDispatcher) -> None:
        if invoker.deletion_requested:
            if invoker.has_finalizer:
                self.cleanup(invoker, dispatcher)
            return

        invoker.add_finalizer()
        invoker.validate()
        invoker.prune_target_conditions()

        if is_default_driver(invoker.driver) and not self._verify_backend(invoker):
            raise DependencyNotReadyError(
                f"Backend of {invoker.kind} {invoker.namespace}/{invoker.name} is not ready"
            )

        some_target_missing = False
        for target in invoker.targets:
            if target.ref is None:
                continue
            if not self._verify_target(invoker, target.ref, dispatcher):
                some_target_missing = True
                continue
            if is_default_driver(invoker.driver) and target.backup_model == MODEL_SIDECAR:
                self._notify_workload(invoker, target.ref, dispatcher)

        if some_target_missing:
            raise DependencyNotReadyError(
                f"Some targets are missing for {invoker.kind} {invoker.namespace}/{invoker.name}"
            )

        try:
            self.trigger_scheduler.ensure_trigger_schedule(invoker)
        except Exception as error:  # pylint: disable=broad-except
            condition_error = _capture(lambda: set_trigger_schedule_created(invoker, CONDITION_FALSE, error))
            raise self._trigger_schedule_failure(invoker, _aggregate(error, condition_error))
        set_trigger_schedule_created(invoker, CONDITION_TRUE)

    def cleanup(self, invoker: BackupInvoker, dispatcher: TargetDispatcher) -> None:
        for target in invoker.targets:
            if target.ref is not None and target.backup_model == MODEL_SIDECAR:
                self._notify_workload(invoker, target.ref, dispatcher)
        self.trigger_scheduler.ensure_trigger_schedule_deleted(invoker)
        ensure_cluster_role_bindings_deleted(self.clients.rbac_api, invoker.labels)
        invoker.remove_finalizer()

    def backoff_delay(self, failures: int) -> float:
        return min(self.base_delay_seconds * 2 ** (failures - 1), self.max_delay_seconds)

    def _retry(
        self,
        key: str,
        memo: MutableMapping[str, Any],
        error: BaseException,
        *,
        give_up: bool = True,
    ) -> kopf.TemporaryError | kopf.PermanentError:
        failures = int(memo.get(FAILURES_MEMO_KEY, 0)) + 1
        if give_up and failures > self.max_requeues:
            memo.pop(FAILURES_MEMO_KEY, None)
            logger.error(
                "Giving up on %s %s after %d retries: %s",
                self.kind,
                key,
                self.max_requeues,
                error_message(error),
            )
            return kopf.PermanentError(error_message(error))
        memo[FAILURES_MEMO_KEY] = failures
        delay = self.backoff_delay(failures)
        logger.warning("Error syncing %s %s, retrying in %.3f seconds: %s", self.kind, key, delay, error_message(error))
        return kopf.TemporaryError(error_message(error), delay=delay)

    def _verify_backend(self, invoker: BackupInvoker) -> bool:
        namespace = invoker.namespace
        try:
            repository = self.clients.custom_api.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION_V1ALPHA1,
                namespace=namespace,
                plural=PLURALS[KIND_REPOSITORY],
                name=invoker.repository,
            )
        except ApiException as error:
            if error.status != 404:
                condition_error = _capture(lambda: set_repository_found(invoker, CONDITION_UNKNOWN, error))
                raise _aggregate(error, condition_error)
            logger.info(
                "Repository %s/%s for %s %s/%s does not exist",
                namespace,
                invoker.repository,
                invoker.kind,
                namespace,
                invoker.name,
            )
            set_repository_found(invoker, CONDITION_FALSE)
            return False
        set_repository_found(invoker, CONDITION_TRUE)

        secret_name = object_field(repository, "spec", "backend", "storageSecretName")
        if not secret_name:
            raise ConfigurationError(f"Repository {namespace}/{invoker.repository} does not reference a storage secret")
        try:
            self.clients.core_api.read_namespaced_secret(name=secret_name, namespace=namespace)
        except ApiException as error:
            if error.status != 404:
                condition_error = _capture(
                    lambda: set_backend_secret_found(invoker, secret_name, CONDITION_UNKNOWN, error)
                )
                raise _aggregate(error, condition_error)
            logger.info(
                "Backend Secret %s/%s for Repository %s/%s does not exist",
                namespace,
                secret_name,
                namespace,
                invoker.repository,
            )
            set_backend_secret_found(invoker, secret_name, CONDITION_FALSE)
            return False
        set_backend_secret_found(invoker, secret_name, CONDITION_TRUE)
        return True

    def _verify_target(self, invoker: BackupInvoker, ref: TargetRef, dispatcher: TargetDispatcher) -> bool:
        try:
            exists = dispatcher.exists_target(ref, invoker.namespace)
        except (TargetLookupError, ApiException) as error:
            logger.error(
                "Failed to check whether %s %s %s/%s exists: %s",
                ref.api_version,
                ref.kind,
                invoker.namespace,
                ref.name,
                error_message(error),
            )
            condition_error = _capture(lambda: set_backup_target_found(invoker, ref, CONDITION_UNKNOWN, error))
            raise _aggregate(error, condition_error)
        if not exists:
            logger.info("Backup target %s %s %s/%s does not exist", ref.api_version, ref.kind, invoker.namespace, ref.name)
            set_backup_target_found(invoker, ref, CONDITION_FALSE)
            return False
        set_backup_target_found(invoker, ref, CONDITION_TRUE)
        return True

    def _notify_workload(self, invoker: BackupInvoker, ref: TargetRef, dispatcher: TargetDispatcher) -> None:
        try:
            dispatcher.notify_target_changed(ref.kind, invoker.namespace, ref.name)
        except Exception as error:  # pylint: disable=broad-except
            message = (
                f"failed to trigger workload controller for {ref.kind} {invoker.namespace}/{ref.name}. "
                f"Reason: {error_message(error)}"
            )
            event_error = self.recorder.warning(
                invoker.object_ref,
                reason=EVENT_REASON_WORKLOAD_TRIGGER_FAILED,
                message=message,
            )
            raise _aggregate(error, event_error)

    def _trigger_schedule_failure(self, invoker: BackupInvoker, error: BaseException) -> BaseException:
        message = (
            f"failed to ensure CronJob for {invoker.kind} {invoker.namespace}/{invoker.name}. "
            f"Reason: {error_message(error)}"
        )
        event_error = self.recorder.warning(
            invoker.object_ref,
            reason=EVENT_REASON_TRIGGER_SCHEDULE_FAILED,
            message=message,
        )
        return _aggregate(error, event_error)


def _capture(action: Callable[[], object]) -> BaseException | None:
    try:
        action()
    except ApiException as error:
        return error
    return None


def _aggregate(error: BaseException, *others: BaseException | None) -> BaseException:
    return aggregate_errors([error, *others]) or error
