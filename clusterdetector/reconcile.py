"""
Fleet status reconciliation.

One pass:

1. read the aggregated kubeconfig (a failure here aborts the pass);
2. probe every referenced API server concurrently and wait for all of them;
3. for every context, upsert its ClusterDetector and write its status;
4. delete managed ClusterDetectors whose context left the kubeconfig.

Steps 3 and 4 are isolated per record: a failing write is logged and the
pass moves on to the next context.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from kubernetes import client
from kubernetes.client.rest import ApiException

from clusterdetector import db, settings
from clusterdetector.exceptions import KubeconfigReadError
from clusterdetector.healthcheck import ClusterStatus, classify
from clusterdetector.kubeconfig import RemoteAPIServer, TargetCluster, read_kubeconfig, servers_by_name

logger = logging.getLogger("cluster-detector")
audit_logger = logging.getLogger("cluster-detector-audit")


def audit(event: str, name: str, **kwargs):
    """Emit a structured audit log line."""
    audit_logger.info(json.dumps({
        "audit": True,
        "event": event,
        "context": name,
        "ts": datetime.now(timezone.utc).isoformat(),
        **kwargs,
    }))


@dataclass
class FleetStatusRecord:
    context: str
    cluster: str
    user: str
    status: ClusterStatus | None = None  # None: cluster not found in kubeconfig
    error: str | None = None

    @property
    def spec(self) -> dict:
        return {"context": self.context, "cluster": self.cluster, "user": self.user}


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------

async def _probe_server(
    server: RemoteAPIServer, limiter: asyncio.Semaphore, timeout: float | None
) -> tuple[ClusterStatus, str | None]:
    async with limiter:
        try:
            return await classify(server, timeout=timeout)
        except Exception as e:
            logger.error(f"💥 cluster={server.name} probe crashed: {type(e).__name__}: {e}")
            return ClusterStatus.UNKNOWN, f"{type(e).__name__}: {e}"


async def probe_fleet(
    targets: list[TargetCluster],
    servers: list[RemoteAPIServer],
    timeout: float | None = None,
    max_concurrency: int | None = None,
) -> list[FleetStatusRecord]:
    """Join contexts to API servers by cluster name and probe them all at once.

    Every cluster is probed once, even when several contexts point at it.
    Returns one record per context, in context order.
    """
    index = servers_by_name(servers)
    wanted = {t.cluster_name: index[t.cluster_name] for t in targets if t.cluster_name in index}

    limit = len(wanted)
    if max_concurrency is None:
        max_concurrency = settings.MAX_CONCURRENT_PROBES
    if max_concurrency:
        limit = min(limit, max_concurrency)
    limiter = asyncio.Semaphore(max(limit, 1))

    names = list(wanted)
    results = await asyncio.gather(*(_probe_server(wanted[n], limiter, timeout) for n in names))
    outcomes = dict(zip(names, results))

    records: list[FleetStatusRecord] = []
    for t in targets:
        record = FleetStatusRecord(context=t.context_name, cluster=t.cluster_name, user=t.user_name)
        if t.cluster_name in outcomes:
            record.status, record.error = outcomes[t.cluster_name]
        else:
            logger.warning(f"❓ [{t.context_name}] cluster={t.cluster_name!r} has no server entry — status left unchanged")
        records.append(record)
    return records


# ---------------------------------------------------------------------------
# ClusterDetector writes
# ---------------------------------------------------------------------------

def _get_detector(custom_api: client.CustomObjectsApi, namespace: str, name: str) -> dict:
    return custom_api.get_namespaced_custom_object(
        group=settings.CRD_GROUP, version=settings.CRD_VERSION,
        namespace=namespace, plural=settings.CRD_PLURAL, name=name,
    )


def _is_conflict(e: ApiException, attempt: int) -> bool:
    return e.status == 409 and attempt < settings.WRITE_CONFLICT_RETRIES


def upsert_detector(custom_api: client.CustomObjectsApi, namespace: str, record: FleetStatusRecord) -> dict:
    """Create the ClusterDetector of a context, or bring its spec up to date.

    Returns the stored object. A conflicting write is retried on a fresh read
    up to WRITE_CONFLICT_RETRIES times, after which the conflict propagates.
    """
    name = record.context
    for attempt in range(settings.WRITE_CONFLICT_RETRIES + 1):
        try:
            obj = _get_detector(custom_api, namespace, name)
        except ApiException as e:
            if e.status != 404:
                raise
            body = {
                "apiVersion": f"{settings.CRD_GROUP}/{settings.CRD_VERSION}",
                "kind": settings.CRD_KIND,
                "metadata": {"name": name, "namespace": namespace, "labels": {settings.MANAGED_LABEL: "true"}},
                "spec": record.spec,
            }
            try:
                created = custom_api.create_namespaced_custom_object(
                    group=settings.CRD_GROUP, version=settings.CRD_VERSION,
                    namespace=namespace, plural=settings.CRD_PLURAL, body=body,
                )
                logger.info(f"🆕 [{name}] created ClusterDetector cluster={record.cluster} user={record.user}")
                return created
            except ApiException as ce:
                if not _is_conflict(ce, attempt):
                    raise
                logger.info(f"🔁 [{name}] created concurrently, retrying ({attempt + 1}/{settings.WRITE_CONFLICT_RETRIES})")
                continue

        labels = obj.get("metadata", {}).get("labels") or {}
        if obj.get("spec") == record.spec and labels.get(settings.MANAGED_LABEL) == "true":
            return obj

        obj["spec"] = record.spec
        obj.setdefault("metadata", {})["labels"] = {**labels, settings.MANAGED_LABEL: "true"}
        try:
            updated = custom_api.replace_namespaced_custom_object(
                group=settings.CRD_GROUP, version=settings.CRD_VERSION,
                namespace=namespace, plural=settings.CRD_PLURAL, name=name, body=obj,
            )
            logger.info(f"✏️  [{name}] updated ClusterDetector spec cluster={record.cluster} user={record.user}")
            return updated
        except ApiException as e:
            if not _is_conflict(e, attempt):
                raise
            logger.info(f"🔁 [{name}] spec write conflict, retrying ({attempt + 1}/{settings.WRITE_CONFLICT_RETRIES})")


def write_status(
    custom_api: client.CustomObjectsApi, namespace: str, obj: dict, status: ClusterStatus
) -> str | None:
    """Overwrite status.clusterstatus of a ClusterDetector.

    Returns the previous value when it changed, the current value otherwise,
    and writes nothing when it is already up to date.
    """
    name = obj["metadata"]["name"]
    for attempt in range(settings.WRITE_CONFLICT_RETRIES + 1):
        previous = (obj.get("status") or {}).get("clusterstatus")
        if previous == status.value:
            return previous
        body = {**obj, "status": {"clusterstatus": status.value}}
        try:
            custom_api.replace_namespaced_custom_object_status(
                group=settings.CRD_GROUP, version=settings.CRD_VERSION,
                namespace=namespace, plural=settings.CRD_PLURAL, name=name, body=body,
            )
            return previous
        except ApiException as e:
            if not _is_conflict(e, attempt):
                raise
            logger.info(f"🔁 [{name}] status write conflict, retrying ({attempt + 1}/{settings.WRITE_CONFLICT_RETRIES})")
            obj = _get_detector(custom_api, namespace, name)


def apply_fleet_status(
    custom_api: client.CustomObjectsApi, records: list[FleetStatusRecord], namespace: str | None = None
) -> list[FleetStatusRecord]:
    """Persist every record. A failed write only affects its own context."""
    namespace = namespace or settings.DETECTOR_NAMESPACE
    probed_at = db._now()
    for record in records:
        try:
            obj = upsert_detector(custom_api, namespace, record)
            if record.status is None:
                db.record_health(record.context, cluster=record.cluster, user=record.user)
                continue
            previous = write_status(custom_api, namespace, obj, record.status)
        except ApiException as e:
            logger.error(f"💥 [{record.context}] failed to write ClusterDetector for cluster={record.cluster}: "
                         f"{e.status} {e.reason}")
            record.error = f"write failed: {e.status} {e.reason}"
            continue
        except Exception as e:
            logger.error(f"💥 [{record.context}] failed to write ClusterDetector for cluster={record.cluster}: "
                         f"{type(e).__name__}: {e}")
            record.error = f"write failed: {type(e).__name__}: {e}"
            continue

        if previous != record.status.value:
            logger.info(f"🔄 [{record.context}] cluster={record.cluster} {previous or 'Unset'} → {record.status.value}")
            audit("cluster.status_changed", record.context, cluster=record.cluster,
                  old=previous, new=record.status.value, error=record.error)
            db.log_audit(record.context, "cluster.status_changed",
                         detail=f"{previous or 'Unset'} → {record.status.value}" + (f" ({record.error})" if record.error else ""))
        db.record_health(record.context, cluster=record.cluster, user=record.user,
                         status=record.status.value, last_error=record.error, last_probe_at=probed_at)
    return records


def prune_orphans(
    custom_api: client.CustomObjectsApi, keep: set[str], namespace: str | None = None
) -> list[str]:
    """Delete managed ClusterDetectors whose context is not in ``keep``."""
    namespace = namespace or settings.DETECTOR_NAMESPACE
    try:
        result = custom_api.list_namespaced_custom_object(
            group=settings.CRD_GROUP, version=settings.CRD_VERSION,
            namespace=namespace, plural=settings.CRD_PLURAL,
            label_selector=f"{settings.MANAGED_LABEL}=true",
        )
    except ApiException as e:
        logger.error(f"💥 could not list ClusterDetectors in ns={namespace}: {e.status} {e.reason} — pruning skipped")
        return []

    deleted: list[str] = []
    for item in result.get("items", []):
        name = item.get("metadata", {}).get("name", "")
        if not name or name in keep:
            continue
        try:
            custom_api.delete_namespaced_custom_object(
                group=settings.CRD_GROUP, version=settings.CRD_VERSION,
                namespace=namespace, plural=settings.CRD_PLURAL, name=name,
            )
        except ApiException as e:
            if e.status != 404:
                logger.error(f"💥 [{name}] failed to delete orphaned ClusterDetector: {e.status} {e.reason}")
                continue
        except Exception as e:
            logger.error(f"💥 [{name}] failed to delete orphaned ClusterDetector: {type(e).__name__}: {e}")
            continue
        logger.info(f"🗑️  [{name}] context left the kubeconfig — ClusterDetector deleted")
        audit("cluster.removed", name)
        db.log_audit(name, "cluster.removed", detail="context no longer in kubeconfig")
        db.forget_context(name)
        deleted.append(name)
    return deleted


# ---------------------------------------------------------------------------
# Full pass
# ---------------------------------------------------------------------------

_pass_lock = asyncio.Lock()


async def reconcile_fleet(
    core_v1: client.CoreV1Api,
    custom_api: client.CustomObjectsApi,
    namespace: str | None = None,
) -> list[FleetStatusRecord]:
    """Run one reconciliation pass. Passes never overlap within the process."""
    namespace = namespace or settings.DETECTOR_NAMESPACE
    async with _pass_lock:
        try:
            parsed = read_kubeconfig(core_v1)
        except KubeconfigReadError as e:
            logger.error(f"💥 fleet pass aborted — {e}")
            return []

        records = await probe_fleet(parsed.targets, parsed.servers)
        apply_fleet_status(custom_api, records, namespace)
        if settings.PRUNE_ORPHANS:
            prune_orphans(custom_api, {r.context for r in records}, namespace)

        running = sum(1 for r in records if r.status is ClusterStatus.RUNNING)
        unknown = sum(1 for r in records if r.status is ClusterStatus.UNKNOWN)
        missing = sum(1 for r in records if r.status is None)
        logger.info(f"✅ fleet pass done — {len(records)} contexts: "
                    f"{running} Running, {unknown} Unknown, {missing} without server entry")
        return records
