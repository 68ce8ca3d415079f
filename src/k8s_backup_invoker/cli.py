"""k8s-backup-invoker - backup invoker controller and its in-pod helpers."""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
import threading

from kubernetes.client import ApiException

from .backup_session import create_backup_session
from .config import ControllerConfig, ensure_directories
from .constants import (
    EVENT_SOURCE_SIDECAR_SCHEDULER,
    KIND_BACKUP_CONFIGURATION,
    KIND_SIDECAR_BACKUP,
    RENEW_DEADLINE_SECONDS,
)
from .controller import BackupInvokerController, policy_watch_registry, run_operator
from .errors import InvokerError
from .events import EventRecorder
from .k8s import KubernetesAuthenticationError, KubernetesClients, error_message, load_kubernetes_clients
from .leader import LeaderElectionGate
from .models import SchedulerOptions
from .restic import ResticExecutor
from .scheduler import SidecarBackupRunner, restic_hostname

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    config = ControllerConfig()
    parser = argparse.ArgumentParser(
        prog="k8s-backup-invoker",
        description="Reconcile backup invokers into scheduled backup runs",
        allow_abbrev=False,
    )
    parser.add_argument("--kubeconfig", default=os.getenv("KUBECONFIG"), help="Path to a kubeconfig file")
    parser.add_argument("--context", default=None, help="Kubeconfig context to use")
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        default=os.getenv("KUBERNETES_SERVICE_HOST") is not None,
        help="Authenticate with the pod's service account",
    )
    parser.add_argument("--log-level", default=config.log_level, help="Logging level (default: %(default)s)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the backup invoker controller")

    run_backup = subparsers.add_parser("run-backup", help="Run the in-pod backup scheduler for one workload")
    run_backup.add_argument("--policy-name", required=True, help=f"{KIND_SIDECAR_BACKUP} to run")
    run_backup.add_argument("--workload-kind", required=True, help="Kind of the workload this pod belongs to")
    run_backup.add_argument("--workload-name", required=True, help="Name of the workload this pod belongs to")
    run_backup.add_argument("--namespace", default=os.getenv("POD_NAMESPACE", config.namespace))
    run_backup.add_argument("--pod-name", default=config.pod_name or socket.gethostname())
    run_backup.add_argument("--node-name", default=config.node_name)
    run_backup.add_argument("--smart-prefix", default=config.smart_prefix)

    create_run = subparsers.add_parser("create-backup-run", help="Create one backup run for an invoker")
    create_run.add_argument("--invoker-name", required=True)
    create_run.add_argument("--invoker-kind", default=KIND_BACKUP_CONFIGURATION)
    create_run.add_argument("--namespace", default=os.getenv("POD_NAMESPACE", config.namespace))

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=args.kubeconfig,
            context=args.context,
            in_cluster=args.in_cluster,
        )
    except KubernetesAuthenticationError as error:
        logger.error("%s", error)
        return 1

    config = ControllerConfig()
    try:
        if args.command == "run":
            return run_controller(config, clients)
        if args.command == "run-backup":
            return run_backup_scheduler(config, clients, args)
        if args.command == "create-backup-run":
            return create_backup_run(clients, args)
    except (ApiException, InvokerError) as error:
        logger.error("%s failed: %s", args.command, error_message(error))
        return 1

    parser.print_help()
    return 1


def run_controller(config: ControllerConfig, clients: KubernetesClients) -> int:
    controller = BackupInvokerController(config=config, clients=clients)
    run_operator(controller.build_registry(), namespace=config.namespace)
    return 0


def run_backup_scheduler(config: ControllerConfig, clients: KubernetesClients, args: argparse.Namespace) -> int:
    ensure_directories(config)
    options = SchedulerOptions(
        namespace=args.namespace,
        policy_name=args.policy_name,
        workload_kind=args.workload_kind,
        workload_name=args.workload_name,
        pod_name=args.pod_name,
        node_name=args.node_name,
        smart_prefix=args.smart_prefix,
    )
    runner = SidecarBackupRunner(
        clients=clients,
        options=options,
        executor=ResticExecutor(
            scratch_dir=config.scratch_dir,
            hostname=restic_hostname(options.workload_kind, options.pod_name, options.node_name),
        ),
        recorder=EventRecorder(core_api=clients.core_api, component=EVENT_SOURCE_SIDECAR_SCHEDULER),
    )
    context = runner.build_context()

    gate = LeaderElectionGate(
        workload_kind=options.workload_kind,
        workload_name=options.workload_name,
        namespace=options.namespace,
        identity=options.pod_name,
        context=context,
    )
    stop_event = threading.Event()
    gate_thread = threading.Thread(target=gate.run, args=(stop_event,), name="leader-election", daemon=True)
    gate_thread.start()
    try:
        run_operator(
            policy_watch_registry(runner.policy_event_handler(context), clients=clients),
            namespace=options.namespace,
            stop_flag=stop_event,
        )
    finally:
        stop_event.set()
        gate_thread.join(timeout=RENEW_DEADLINE_SECONDS)
    return 0


def create_backup_run(clients: KubernetesClients, args: argparse.Namespace) -> int:
    create_backup_session(
        clients.custom_api,
        invoker_kind=args.invoker_kind,
        invoker_name=args.invoker_name,
        namespace=args.namespace,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
