from __future__ import annotations

API_GROUP = "backup.kbi.dev"
API_VERSION_V1BETA1 = "v1beta1"
API_VERSION_V1ALPHA1 = "v1alpha1"

KIND_BACKUP_CONFIGURATION = "BackupConfiguration"
KIND_BACKUP_BATCH = "BackupBatch"
KIND_BACKUP_SESSION = "BackupSession"
KIND_REPOSITORY = "Repository"
KIND_SIDECAR_BACKUP = "SidecarBackup"

PLURALS = {
    KIND_BACKUP_CONFIGURATION: "backupconfigurations",
    KIND_BACKUP_BATCH: "backupbatches",
    KIND_BACKUP_SESSION: "backupsessions",
    KIND_REPOSITORY: "repositories",
    KIND_SIDECAR_BACKUP: "sidecarbackups",
}

FINALIZER = API_GROUP

KIND_DEPLOYMENT = "Deployment"
KIND_DAEMONSET = "DaemonSet"
KIND_STATEFULSET = "StatefulSet"
KIND_REPLICATION_CONTROLLER = "ReplicationController"
KIND_REPLICASET = "ReplicaSet"
KIND_DEPLOYMENT_CONFIG = "DeploymentConfig"
KIND_PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"

SIDECAR_WORKLOAD_KINDS = frozenset(
    {
        KIND_DEPLOYMENT,
        KIND_DAEMONSET,
        KIND_STATEFULSET,
        KIND_REPLICATION_CONTROLLER,
        KIND_REPLICASET,
        KIND_DEPLOYMENT_CONFIG,
    }
)
MULTI_REPLICA_WORKLOAD_KINDS = frozenset({KIND_DEPLOYMENT, KIND_REPLICASET, KIND_REPLICATION_CONTROLLER})

MODEL_SIDECAR = "sidecar"
MODEL_JOB = "job"

DRIVER_RESTIC = "Restic"
DRIVER_VOLUME_SNAPSHOTTER = "VolumeSnapshotter"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

CONDITION_REPOSITORY_FOUND = "RepositoryFound"
CONDITION_BACKEND_SECRET_FOUND = "BackendSecretFound"
CONDITION_BACKUP_TARGET_FOUND = "BackupTargetFound"
CONDITION_TRIGGER_SCHEDULE_CREATED = "TriggerScheduleCreated"

REASON_REPOSITORY_AVAILABLE = "RepositoryAvailable"
REASON_REPOSITORY_NOT_AVAILABLE = "RepositoryNotAvailable"
REASON_UNABLE_TO_CHECK_REPOSITORY = "UnableToCheckRepositoryAvailability"
REASON_BACKEND_SECRET_AVAILABLE = "BackendSecretAvailable"
REASON_BACKEND_SECRET_NOT_AVAILABLE = "BackendSecretNotAvailable"
REASON_UNABLE_TO_CHECK_BACKEND_SECRET = "UnableToCheckBackendSecretAvailability"
REASON_TARGET_AVAILABLE = "TargetAvailable"
REASON_TARGET_NOT_AVAILABLE = "TargetNotAvailable"
REASON_UNABLE_TO_CHECK_TARGET = "UnableToCheckTargetAvailability"
REASON_TRIGGER_SCHEDULE_CREATED = "TriggerScheduleCreationSucceeded"
REASON_TRIGGER_SCHEDULE_FAILED = "TriggerScheduleCreationFailed"

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

EVENT_SOURCE_INVOKER_CONTROLLER = "backup-invoker-controller"
EVENT_SOURCE_SIDECAR_SCHEDULER = "sidecar-backup-scheduler"

EVENT_REASON_INVALID_CONFIGURATION = "InvalidBackupConfiguration"
EVENT_REASON_TRIGGER_SCHEDULE_FAILED = "TriggerScheduleCreationFailed"
EVENT_REASON_WORKLOAD_TRIGGER_FAILED = "WorkloadControllerTriggeringFailed"
EVENT_REASON_FAILED_SETUP = "FailedSetup"
EVENT_REASON_FAILED_SCHEDULED_BACKUP = "FailedScheduledBackup"
EVENT_REASON_FAILED_TO_CHECK = "FailedToCheck"

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_INVOKER_KIND = f"{API_GROUP}/invoker-kind"
LABEL_INVOKER_NAME = f"{API_GROUP}/invoker-name"
LABEL_DELETE_JOB_ON_COMPLETION = f"{API_GROUP}/delete-job-on-completion"
MANAGED_BY_VALUE = "k8s-backup-invoker"

SESSION_PHASE_SUCCEEDED = "Succeeded"

TRIGGER_PREFIX = "kbi-trigger"
TRIGGER_CONTAINER_NAME = "trigger"
TRIGGER_CLUSTER_ROLE = "kbi-trigger-schedule"
TRIGGER_COMMAND = "create-backup-run"
MAX_CRONJOB_NAME_LENGTH = 52

CHECK_SCHEDULE = "0 0 */3 * *"
DEPENDENCY_REQUEUE_DELAY_SECONDS = 5.0

LEASE_DURATION_SECONDS = 15.0
RENEW_DEADLINE_SECONDS = 10.0
RETRY_PERIOD_SECONDS = 2.0


def backup_model_for_kind(kind: str) -> str:
    if kind in SIDECAR_WORKLOAD_KINDS:
        return MODEL_SIDECAR
    return MODEL_JOB


def is_default_driver(driver: str | None) -> bool:
    return not driver or driver == DRIVER_RESTIC
