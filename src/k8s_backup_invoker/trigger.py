from __future__ import annotations

import copy
import logging
from typing import Any, Iterable

from kubernetes.client import ApiException

from .constants import (
    LABEL_DELETE_JOB_ON_COMPLETION,
    MAX_CRONJOB_NAME_LENGTH,
    TRIGGER_COMMAND,
    TRIGGER_CONTAINER_NAME,
    TRIGGER_PREFIX,
)
from .invoker import BackupInvoker
from .k8s import KubernetesClients, create_or_patch, is_not_found, is_subset, sanitize_dns_label, to_plain
from .rbac import ensure_trigger_rbac

logger = logging.getLogger(__name__)

# Container level runtime settings copied onto the trigger job. env is merged separately.
TRIGGER_CONTAINER_SETTINGS = ("resources", "envFrom", "securityContext")
TRIGGER_OWNED_CONTAINER_FIELDS = ("image", "imagePullPolicy", "args", "env", *TRIGGER_CONTAINER_SETTINGS)
TRIGGER_POD_SETTINGS = ("serviceAccountName", "restartPolicy", "imagePullSecrets", "securityContext")


def trigger_schedule_name(invoker_name: str) -> str:
    return sanitize_dns_label(
        f"{TRIGGER_PREFIX}-{invoker_name.replace('.', '-')}",
        max_length=MAX_CRONJOB_NAME_LENGTH,
    )


def build_trigger_schedule(
    invoker: BackupInvoker,
    *,
    image: str,
    service_account_name: str,
    image_pull_secrets: Iterable[str] = (),
) -> dict[str, Any]:
    name = trigger_schedule_name(invoker.name)
    pod_settings = invoker.runtime_settings.pod or {}
    container_settings = invoker.runtime_settings.container or {}

    env: list[dict[str, Any]] = [
        {"name": "POD_NAMESPACE", "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}}},
    ]
    env.extend(container_settings.get("env") or [])
    container: dict[str, Any] = {
        "name": TRIGGER_CONTAINER_NAME,
        "image": image,
        "imagePullPolicy": "IfNotPresent",
        "args": [
            TRIGGER_COMMAND,
            f"--invoker-name={invoker.name}",
            f"--invoker-kind={invoker.kind}",
        ],
        "env": env,
    }
    for setting in TRIGGER_CONTAINER_SETTINGS:
        if container_settings.get(setting):
            container[setting] = container_settings[setting]

    pod_spec: dict[str, Any] = {
        "containers": [container],
        "restartPolicy": "Never",
        "serviceAccountName": service_account_name,
    }
    pull_secrets = pod_settings.get("imagePullSecrets") or [{"name": secret} for secret in image_pull_secrets]
    if pull_secrets:
        pod_spec["imagePullSecrets"] = pull_secrets
    if pod_settings.get("securityContext"):
        pod_spec["securityContext"] = pod_settings["securityContext"]

    return {
        "apiVersion": "batch/v1",
        "kind": "CronJob",
        "metadata": {
            "name": name,
            "namespace": invoker.namespace,
            "labels": dict(invoker.labels),
            "ownerReferences": [invoker.object_ref.to_owner_reference()],
        },
        "spec": {
            "schedule": invoker.schedule,
            "suspend": invoker.paused,
            "jobTemplate": {
                "metadata": {"labels": {**invoker.labels, LABEL_DELETE_JOB_ON_COMPLETION: "allow"}},
                "spec": {
                    "template": {
                        "metadata": {"labels": dict(invoker.labels)},
                        "spec": pod_spec,
                    }
                },
            },
        },
    }


def trigger_schedule_matches(desired: dict[str, Any], live: dict[str, Any]) -> bool:
    """Compare the fields the builder owns; settings removed from the invoker count as drift."""
    desired_metadata = desired["metadata"]
    live_metadata = live.get("metadata") or {}
    if not is_subset(desired_metadata["labels"], live_metadata.get("labels") or {}):
        return False
    if not is_subset(desired_metadata["ownerReferences"], live_metadata.get("ownerReferences") or []):
        return False

    desired_spec = desired["spec"]
    live_spec = live.get("spec") or {}
    if live_spec.get("schedule") != desired_spec["schedule"]:
        return False
    if bool(live_spec.get("suspend")) != desired_spec["suspend"]:
        return False

    desired_job = desired_spec["jobTemplate"]
    live_job = live_spec.get("jobTemplate") or {}
    if not is_subset(desired_job["metadata"]["labels"], (live_job.get("metadata") or {}).get("labels") or {}):
        return False
    desired_template = desired_job["spec"]["template"]
    live_template = (live_job.get("spec") or {}).get("template") or {}
    if not is_subset(desired_template["metadata"]["labels"], (live_template.get("metadata") or {}).get("labels") or {}):
        return False

    desired_pod = desired_template["spec"]
    live_pod = live_template.get("spec") or {}
    for setting in TRIGGER_POD_SETTINGS:
        if not _same_setting(desired_pod.get(setting), live_pod.get(setting)):
            return False

    desired_container = desired_pod["containers"][0]
    live_container = _find_container(live_pod, desired_container["name"])
    if live_container is None:
        return False
    return all(
        _same_setting(desired_container.get(setting), live_container.get(setting))
        for setting in TRIGGER_OWNED_CONTAINER_FIELDS
    )


def merge_trigger_schedule(desired: dict[str, Any], live: dict[str, Any]) -> dict[str, Any]:
    """Full replacement body: the live object with every builder-owned field overwritten."""
    body = copy.deepcopy(live)
    desired_metadata = desired["metadata"]
    metadata = body.setdefault("metadata", {})
    metadata["labels"] = {**(metadata.get("labels") or {}), **desired_metadata["labels"]}
    owners = list(metadata.get("ownerReferences") or [])
    known_uids = {owner.get("uid") for owner in owners}
    owners.extend(owner for owner in desired_metadata["ownerReferences"] if owner["uid"] not in known_uids)
    metadata["ownerReferences"] = owners

    desired_spec = desired["spec"]
    spec = body.setdefault("spec", {})
    spec["schedule"] = desired_spec["schedule"]
    spec["suspend"] = desired_spec["suspend"]

    desired_job = desired_spec["jobTemplate"]
    job = spec.setdefault("jobTemplate", {})
    job_metadata = job.setdefault("metadata", {})
    job_metadata["labels"] = {**(job_metadata.get("labels") or {}), **desired_job["metadata"]["labels"]}
    desired_template = desired_job["spec"]["template"]
    template = job.setdefault("spec", {}).setdefault("template", {})
    template_metadata = template.setdefault("metadata", {})
    template_metadata["labels"] = {
        **(template_metadata.get("labels") or {}),
        **desired_template["metadata"]["labels"],
    }

    desired_pod = desired_template["spec"]
    pod = template.setdefault("spec", {})
    # serviceAccount is the deprecated alias the API server fills from serviceAccountName.
    pod.pop("serviceAccount", None)
    for setting in TRIGGER_POD_SETTINGS:
        if setting in desired_pod:
            pod[setting] = desired_pod[setting]
        else:
            pod.pop(setting, None)

    desired_container = desired_pod["containers"][0]
    containers = list(pod.get("containers") or [])
    for index, container in enumerate(containers):
        if container.get("name") == desired_container["name"]:
            containers[index] = desired_container
            break
    else:
        containers.append(desired_container)
    pod["containers"] = containers
    return body


def _find_container(pod_spec: dict[str, Any], name: str) -> dict[str, Any] | None:
    for container in pod_spec.get("containers") or []:
        if container.get("name") == name:
            return container
    return None


def _same_setting(desired: Any, live: Any) -> bool:
    # The API server fills defaults into nested entries (fieldRef.apiVersion, empty
    # securityContext), so entries compare as subsets while keys and lengths must match.
    if not desired or not live:
        return not desired and not live
    if isinstance(desired, list):
        return (
            isinstance(live, list)
            and len(desired) == len(live)
            and all(is_subset(wanted, actual) for wanted, actual in zip(desired, live))
        )
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        live_keys = {key for key, value in live.items() if value not in (None, {}, [])}
        return live_keys == set(desired) and is_subset(desired, live)
    return desired == live


class TriggerScheduler:
    """Keeps one recurring CronJob per invoker that creates backup runs on schedule."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        image: str,
        image_pull_secrets: Iterable[str] = (),
    ) -> None:
        self.clients = clients
        self.image = image
        self.image_pull_secrets = tuple(image_pull_secrets)

    def ensure_trigger_schedule(self, invoker: BackupInvoker) -> str:
        name = trigger_schedule_name(invoker.name)
        service_account_name = self._ensure_service_account(invoker, name)
        ensure_trigger_rbac(
            self.clients.rbac_api,
            owner=invoker.object_ref,
            namespace=invoker.namespace,
            service_account_name=service_account_name,
            labels=invoker.labels,
        )
        desired = build_trigger_schedule(
            invoker,
            image=self.image,
            service_account_name=service_account_name,
            image_pull_secrets=self.image_pull_secrets,
        )
        batch_api = self.clients.batch_api
        namespace = invoker.namespace
        try:
            existing = batch_api.read_namespaced_cron_job(name=name, namespace=namespace)
        except ApiException as error:
            if not is_not_found(error):
                raise
            batch_api.create_namespaced_cron_job(namespace=namespace, body=desired)
            outcome = "created"
        else:
            live = to_plain(existing)
            if trigger_schedule_matches(desired, live):
                return "unchanged"
            batch_api.replace_namespaced_cron_job(
                name=name,
                namespace=namespace,
                body=merge_trigger_schedule(desired, live),
            )
            outcome = "patched"
        logger.info("Trigger CronJob %s/%s %s", namespace, name, outcome)
        return outcome

    def ensure_trigger_schedule_deleted(self, invoker: BackupInvoker) -> bool:
        """Hand the CronJob over to garbage collection by ensuring it is owned by the invoker."""
        name = trigger_schedule_name(invoker.name)
        try:
            existing = self.clients.batch_api.read_namespaced_cron_job(name=name, namespace=invoker.namespace)
        except ApiException as error:
            if is_not_found(error):
                return False
            raise
        owner = invoker.object_ref.to_owner_reference()
        owners = (to_plain(existing).get("metadata") or {}).get("ownerReferences") or []
        if any(ref.get("uid") == owner["uid"] for ref in owners):
            return False
        self.clients.batch_api.patch_namespaced_cron_job(
            name=name,
            namespace=invoker.namespace,
            body={"metadata": {"ownerReferences": [*owners, owner]}},
        )
        return True

    def _ensure_service_account(self, invoker: BackupInvoker, name: str) -> str:
        pod_settings = invoker.runtime_settings.pod or {}
        if pod_settings.get("serviceAccountName"):
            return str(pod_settings["serviceAccountName"])

        core_api = self.clients.core_api
        namespace = invoker.namespace
        desired = {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": dict(invoker.labels),
                "ownerReferences": [invoker.object_ref.to_owner_reference()],
            },
        }
        create_or_patch(
            desired=desired,
            read=lambda: core_api.read_namespaced_service_account(name=name, namespace=namespace),
            create=lambda body: core_api.create_namespaced_service_account(namespace=namespace, body=body),
            patch=lambda body: core_api.patch_namespaced_service_account(name=name, namespace=namespace, body=body),
        )
        return name
