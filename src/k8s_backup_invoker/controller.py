from __future__ import annotations

from dataclasses import dataclass
from functools import partial
import logging
import threading
from typing import Any, Callable, Mapping

import kopf
from kubernetes import client

from .config import ControllerConfig
from .constants import (
    API_GROUP,
    API_VERSION_V1ALPHA1,
    API_VERSION_V1BETA1,
    EVENT_SOURCE_INVOKER_CONTROLLER,
    KIND_DAEMONSET,
    KIND_DEPLOYMENT,
    KIND_DEPLOYMENT_CONFIG,
    KIND_PERSISTENT_VOLUME_CLAIM,
    KIND_REPLICASET,
    KIND_REPLICATION_CONTROLLER,
    KIND_SIDECAR_BACKUP,
    KIND_STATEFULSET,
    PLURALS,
    SIDECAR_WORKLOAD_KINDS,
)
from .dispatcher import IndexLister, TargetDispatcher, WorkloadKindHandler
from .events import EventRecorder
from .invoker import INVOKER_KINDS
from .k8s import KubernetesClients
from .reconciler import BackupInvokerReconciler
from .trigger import TriggerScheduler

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class WorkloadResource:
    kind: str
    api_version: str
    plural: str

    @property
    def index_id(self) -> str:
        return f"{self.plural}_index"


WORKLOAD_RESOURCES = (
    WorkloadResource(KIND_DEPLOYMENT, "apps/v1", "deployments"),
    WorkloadResource(KIND_DAEMONSET, "apps/v1", "daemonsets"),
    WorkloadResource(KIND_STATEFULSET, "apps/v1", "statefulsets"),
    WorkloadResource(KIND_REPLICASET, "apps/v1", "replicasets"),
    WorkloadResource(KIND_REPLICATION_CONTROLLER, "v1", "replicationcontrollers"),
    WorkloadResource(KIND_PERSISTENT_VOLUME_CLAIM, "v1", "persistentvolumeclaims"),
)
OPENSHIFT_WORKLOAD_RESOURCES = (WorkloadResource(KIND_DEPLOYMENT_CONFIG, "apps.openshift.io/v1", "deploymentconfigs"),)


def workload_resources(*, enable_openshift: bool = False) -> tuple[WorkloadResource, ...]:
    if enable_openshift:
        return (*WORKLOAD_RESOURCES, *OPENSHIFT_WORKLOAD_RESOURCES)
    return WORKLOAD_RESOURCES


def index_by_namespaced_name(namespace: str | None, name: str, **_: Any) -> dict[tuple[str, str], dict[str, Any]]:
    return {(namespace or "", name): {"metadata": {"namespace": namespace or "", "name": name}}}


def log_workload_change(kind: str, key: str) -> None:
    logger.info("%s %s has a backup invoker change to apply", kind, key)


def connection_info(configuration: client.Configuration) -> kopf.ConnectionInfo:
    """Hand kopf the credentials the Kubernetes client was loaded with, including the chosen context."""
    scheme: str | None = None
    token: str | None = None
    authorization = configuration.get_api_key_with_prefix("authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if not token:
            scheme, token = "Bearer", scheme
    return kopf.ConnectionInfo(
        server=configuration.host,
        ca_path=configuration.ssl_ca_cert,
        insecure=not configuration.verify_ssl,
        username=configuration.username or None,
        password=configuration.password or None,
        scheme=scheme,
        token=token,
        certificate_path=configuration.cert_file,
        private_key_path=configuration.key_file,
    )


class BackupInvokerController:
    """Registers one reconcile and one cleanup handler per invoker kind with kopf.

    Workload kinds are watched through kopf indexes keyed by ``(namespace, name)``;
    kopf holds every handler until the indexes are populated.
    """

    def __init__(self, *, config: ControllerConfig, clients: KubernetesClients) -> None:
        self.config = config
        self.clients = clients
        self.recorder = EventRecorder(core_api=clients.core_api, component=EVENT_SOURCE_INVOKER_CONTROLLER)
        self.trigger_scheduler = TriggerScheduler(
            clients=clients,
            image=config.trigger_image,
            image_pull_secrets=config.image_pull_secrets,
        )
        self.workloads = workload_resources(enable_openshift=config.enable_openshift)
        self.reconcilers = {
            kind: BackupInvokerReconciler(
                kind=kind,
                clients=clients,
                trigger_scheduler=self.trigger_scheduler,
                recorder=self.recorder,
                max_requeues=config.max_num_requeues,
                requeue_delay_seconds=config.requeue_delay_seconds,
            )
            for kind in INVOKER_KINDS
        }

    def dispatcher(self, indexes: Mapping[str, Any]) -> TargetDispatcher:
        handlers = []
        for workload in self.workloads:
            index = indexes.get(workload.index_id)
            notify = None
            if workload.kind in SIDECAR_WORKLOAD_KINDS:
                notify = partial(log_workload_change, workload.kind)
            handlers.append(
                WorkloadKindHandler(
                    kind=workload.kind,
                    lister=IndexLister(index) if index is not None else None,
                    notify=notify,
                )
            )
        return TargetDispatcher(handlers)

    def configure(self, settings: kopf.OperatorSettings, **_: Any) -> None:
        settings.execution.max_workers = self.config.worker_threads
        settings.networking.request_timeout = REQUEST_TIMEOUT_SECONDS
        settings.posting.level = logging.WARNING
        settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=API_GROUP)
        settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
            prefix=API_GROUP,
            key="last-handled-configuration",
        )

    def login(self, **_: Any) -> kopf.ConnectionInfo:
        return connection_info(self.clients.api_client.configuration)

    def reconcile_invoker(self, kind: str, name: str, namespace: str, memo: Any, **kwargs: Any) -> None:
        self.reconcilers[kind].process(name, namespace, dispatcher=self.dispatcher(kwargs), memo=memo)

    def cleanup_invoker(self, kind: str, name: str, namespace: str, memo: Any, **kwargs: Any) -> None:
        self.reconcilers[kind].process_deletion(name, namespace, dispatcher=self.dispatcher(kwargs), memo=memo)

    def build_registry(self, registry: kopf.OperatorRegistry | None = None) -> kopf.OperatorRegistry:
        registry = registry if registry is not None else kopf.OperatorRegistry()
        kopf.on.startup(registry=registry)(self.configure)
        kopf.on.login(registry=registry)(self.login)

        for workload in self.workloads:
            kopf.index(
                workload.api_version,
                workload.plural,
                id=workload.index_id,
                registry=registry,
            )(index_by_namespaced_name)

        for kind in self.reconcilers:
            plural = PLURALS[kind]

            def reconcile(name: str, namespace: str, memo: Any, _kind: str = kind, **kwargs: Any) -> None:
                self.reconcile_invoker(_kind, name, namespace, memo, **kwargs)

            def cleanup(name: str, namespace: str, memo: Any, _kind: str = kind, **kwargs: Any) -> None:
                self.cleanup_invoker(_kind, name, namespace, memo, **kwargs)

            resource = (API_GROUP, API_VERSION_V1BETA1, plural)
            reconcile_id = f"reconcile-{plural}"
            kopf.on.resume(*resource, id=reconcile_id, registry=registry)(reconcile)
            kopf.on.create(*resource, id=reconcile_id, registry=registry)(reconcile)
            kopf.on.update(*resource, id=reconcile_id, registry=registry)(reconcile)
            # The invoker's own finalizer keeps the object around until cleanup succeeds.
            kopf.on.delete(*resource, id=f"cleanup-{plural}", optional=True, registry=registry)(cleanup)
        return registry


def run_operator(
    registry: kopf.OperatorRegistry,
    *,
    namespace: str = "",
    stop_flag: threading.Event | None = None,
) -> None:
    kopf.run(
        registry=registry,
        standalone=True,
        clusterwide=not namespace,
        namespaces=[namespace] if namespace else [],
        stop_flag=stop_flag,
    )


def policy_watch_registry(
    on_policy_event: Callable[..., None],
    *,
    clients: KubernetesClients,
    registry: kopf.OperatorRegistry | None = None,
) -> kopf.OperatorRegistry:
    """Registry for the in-pod scheduler: watch events of the sidecar backup policies only."""
    registry = registry if registry is not None else kopf.OperatorRegistry()

    def login(**_: Any) -> kopf.ConnectionInfo:
        return connection_info(clients.api_client.configuration)

    kopf.on.login(registry=registry)(login)
    kopf.on.event(
        API_GROUP,
        API_VERSION_V1ALPHA1,
        PLURALS[KIND_SIDECAR_BACKUP],
        id="reschedule-backups",
        registry=registry,
    )(on_policy_event)
    return registry
