"""Health Assessor use case.

Derives per-resource health from live status fields and aggregates it with
worst-case semantics:

    Degraded > Progressing > Suspended > Unknown > Missing > Healthy

Health rules are keyed by kind. Kinds that carry no status are Healthy as
soon as they exist; unknown kinds fall back to the generic Ready condition
rule.
"""

import logging
from typing import Any, Callable, Iterable, Optional

from ..domain.entities import HealthReport, HealthStatus, ResourceHealth
from ..domain.resources import LiveResource, ResourceKey

logger = logging.getLogger(__name__)

HealthCheck = Callable[[LiveResource], tuple[HealthStatus, str]]

# Kinds whose existence is all there is to know
STATUSLESS_KINDS = frozenset(
    {
        "ClusterRole",
        "ClusterRoleBinding",
        "ConfigMap",
        "CustomResourceDefinition",
        "Endpoints",
        "LimitRange",
        "NetworkPolicy",
        "PodDisruptionBudget",
        "PriorityClass",
        "ResourceQuota",
        "Role",
        "RoleBinding",
        "Secret",
        "ServiceAccount",
        "StorageClass",
    }
)

# Container waiting reasons that will not resolve without intervention
FATAL_WAITING_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ImagePullBackOff",
        "ErrImagePull",
        "CreateContainerConfigError",
        "InvalidImageName",
    }
)


def worst(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Aggregate health; an empty set is Healthy."""
    result = HealthStatus.HEALTHY
    for status in statuses:
        if status.severity > result.severity:
            result = status
    return result


def _condition(status: dict[str, Any], condition_type: str) -> Optional[dict[str, Any]]:
    for condition in status.get("conditions") or []:
        if isinstance(condition, dict) and condition.get("type") == condition_type:
            return condition
    return None


def _generation_pending(resource: LiveResource) -> bool:
    generation = resource.metadata.get("generation")
    observed = resource.status.get("observedGeneration")
    return generation is not None and (observed is None or observed < generation)


# ============================================
# Built-in rules
# ============================================


def deployment_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    spec, status = resource.spec, resource.status
    if spec.get("paused"):
        return HealthStatus.SUSPENDED, "Deployment is paused"
    if _generation_pending(resource):
        return HealthStatus.PROGRESSING, "Waiting for rollout to be observed"

    progressing = _condition(status, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus.DEGRADED, f"Deployment {resource.key.name} exceeded its progress deadline"

    replicas = spec.get("replicas", 1)
    updated = status.get("updatedReplicas", 0)
    total = status.get("replicas", 0)
    available = status.get("availableReplicas", 0)
    if updated < replicas:
        return HealthStatus.PROGRESSING, f"{updated} of {replicas} replicas updated"
    if total > updated:
        return HealthStatus.PROGRESSING, f"{total - updated} old replicas pending termination"
    if available < updated:
        return HealthStatus.PROGRESSING, f"{available} of {updated} updated replicas available"
    return HealthStatus.HEALTHY, ""


def statefulset_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    spec, status = resource.spec, resource.status
    if _generation_pending(resource):
        return HealthStatus.PROGRESSING, "Waiting for rollout to be observed"
    replicas = spec.get("replicas", 1)
    ready = status.get("readyReplicas", 0)
    if ready < replicas:
        return HealthStatus.PROGRESSING, f"{ready} of {replicas} replicas ready"
    strategy = (spec.get("updateStrategy") or {}).get("type", "RollingUpdate")
    if strategy == "RollingUpdate" and status.get("updateRevision") != status.get("currentRevision"):
        return HealthStatus.PROGRESSING, "Rolling update in progress"
    return HealthStatus.HEALTHY, ""


def daemonset_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    status = resource.status
    if _generation_pending(resource):
        return HealthStatus.PROGRESSING, "Waiting for rollout to be observed"
    desired = status.get("desiredNumberScheduled", 0)
    updated = status.get("updatedNumberScheduled", 0)
    available = status.get("numberAvailable", 0)
    if updated < desired:
        return HealthStatus.PROGRESSING, f"{updated} of {desired} pods updated"
    if available < desired:
        return HealthStatus.PROGRESSING, f"{available} of {desired} pods available"
    return HealthStatus.HEALTHY, ""


def replicaset_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    spec, status = resource.spec, resource.status
    failure = _condition(status, "ReplicaFailure")
    if failure and failure.get("status") == "True":
        return HealthStatus.DEGRADED, failure.get("message", "Replica failure")
    if _generation_pending(resource):
        return HealthStatus.PROGRESSING, "Waiting for rollout to be observed"
    replicas = spec.get("replicas", 1)
    available = status.get("availableReplicas", 0)
    if available < replicas:
        return HealthStatus.PROGRESSING, f"{available} of {replicas} replicas available"
    return HealthStatus.HEALTHY, ""


def pod_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    status = resource.status
    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in FATAL_WAITING_REASONS:
            return HealthStatus.DEGRADED, f"{container.get('name')}: {waiting['reason']}"

    phase = status.get("phase")
    if phase == "Succeeded":
        return HealthStatus.HEALTHY, "Pod completed"
    if phase == "Failed":
        return HealthStatus.DEGRADED, status.get("message", "Pod failed")
    if phase == "Pending":
        return HealthStatus.PROGRESSING, "Pod pending"
    if phase == "Running":
        ready = _condition(status, "Ready")
        if ready and ready.get("status") == "True":
            return HealthStatus.HEALTHY, ""
        return HealthStatus.PROGRESSING, "Pod running but not ready"
    return HealthStatus.UNKNOWN, f"Unrecognized pod phase {phase!r}"


def _has_ingress_address(resource: LiveResource) -> bool:
    load_balancer = resource.status.get("loadBalancer") or {}
    return bool(load_balancer.get("ingress"))


def service_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    if resource.spec.get("type") != "LoadBalancer":
        return HealthStatus.HEALTHY, ""
    if _has_ingress_address(resource):
        return HealthStatus.HEALTHY, ""
    return HealthStatus.PROGRESSING, "Waiting for load balancer address"


def ingress_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    if _has_ingress_address(resource):
        return HealthStatus.HEALTHY, ""
    return HealthStatus.PROGRESSING, "Waiting for ingress address"


def pvc_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    phase = resource.status.get("phase")
    if phase == "Bound":
        return HealthStatus.HEALTHY, ""
    if phase == "Pending":
        return HealthStatus.PROGRESSING, "Claim pending"
    if phase == "Lost":
        return HealthStatus.DEGRADED, "Claim lost its volume"
    return HealthStatus.UNKNOWN, f"Unrecognized claim phase {phase!r}"


def job_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    if resource.spec.get("suspend"):
        return HealthStatus.SUSPENDED, "Job is suspended"
    status = resource.status
    failed = _condition(status, "Failed")
    if failed and failed.get("status") == "True":
        return HealthStatus.DEGRADED, failed.get("message", "Job failed")
    complete = _condition(status, "Complete")
    if complete and complete.get("status") == "True":
        return HealthStatus.HEALTHY, "Job completed"
    return HealthStatus.PROGRESSING, "Job running"


def cronjob_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    if resource.spec.get("suspend"):
        return HealthStatus.SUSPENDED, "CronJob is suspended"
    return HealthStatus.HEALTHY, ""


def namespace_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    if resource.status.get("phase") == "Terminating":
        return HealthStatus.PROGRESSING, "Namespace terminating"
    return HealthStatus.HEALTHY, ""


def generic_health(resource: LiveResource) -> tuple[HealthStatus, str]:
    """Fallback rule based on a Ready condition."""
    if resource.spec.get("suspend") is True:
        return HealthStatus.SUSPENDED, "Resource is suspended"
    ready = _condition(resource.status, "Ready")
    if ready is None:
        return HealthStatus.UNKNOWN, "No Ready condition"
    value = ready.get("status")
    if value == "True":
        return HealthStatus.HEALTHY, ""
    if value == "False":
        return HealthStatus.DEGRADED, ready.get("message") or ready.get("reason") or "Not ready"
    return HealthStatus.PROGRESSING, ready.get("message") or "Readiness unknown"


BUILTIN_CHECKS: dict[str, HealthCheck] = {
    "Deployment": deployment_health,
    "StatefulSet": statefulset_health,
    "DaemonSet": daemonset_health,
    "ReplicaSet": replicaset_health,
    "Pod": pod_health,
    "Service": service_health,
    "Ingress": ingress_health,
    "PersistentVolumeClaim": pvc_health,
    "Job": job_health,
    "CronJob": cronjob_health,
    "Namespace": namespace_health,
}

# Rules that can decide without a status block
_STATUS_OPTIONAL = frozenset({"Service", "CronJob", "Namespace", "Job", "Deployment"})


class HealthAssessor:
    """Assesses resource and Application health.

    Args:
        checks: Extra or replacement rules keyed by kind
    """

    def __init__(self, checks: Optional[dict[str, HealthCheck]] = None):
        self.checks = dict(BUILTIN_CHECKS)
        if checks:
            self.checks.update(checks)

    def assess_resource(self, resource: LiveResource) -> ResourceHealth:
        kind = resource.key.kind
        if kind in STATUSLESS_KINDS and kind not in self.checks:
            return ResourceHealth(resource.key, HealthStatus.HEALTHY)

        check = self.checks.get(kind)
        if check is None:
            status, message = generic_health(resource)
        elif not resource.status and kind not in _STATUS_OPTIONAL:
            status, message = HealthStatus.UNKNOWN, "No status reported"
        else:
            status, message = check(resource)
        return ResourceHealth(resource.key, status, message)

    def assess(
        self,
        desired: Iterable[ResourceKey],
        live: Iterable[LiveResource],
        failed: Iterable[str] = (),
    ) -> HealthReport:
        """Assess every desired resource and aggregate.

        Args:
            desired: Identities the Application tracks
            live: Live resources owned by the Application
            failed: Resource identities whose last operation failed
        """
        live_by_key = {r.key: r for r in live}
        failed_set = set(failed)
        resources: list[ResourceHealth] = []

        for key in desired:
            if str(key) in failed_set:
                resources.append(ResourceHealth(key, HealthStatus.DEGRADED, "Last sync operation failed"))
                continue
            resource = live_by_key.get(key)
            if resource is None:
                resources.append(ResourceHealth(key, HealthStatus.MISSING, "Resource does not exist"))
                continue
            resources.append(self.assess_resource(resource))

        report = HealthReport(status=worst(r.status for r in resources), resources=tuple(resources))
        logger.debug(f"Health: {report.status.value} over {len(resources)} resources")
        return report
