"""
cluster-detector operator.

Keeps one ClusterDetector per context of the aggregated kubeconfig Secret,
with the liveness of that context's API server as its status. A fleet pass
runs at startup, whenever the Secret changes, and every RESYNC_SECONDS.

Run with:  cluster-detector
     or:  kopf run -m clusterdetector.main --namespace resource-replicator-system --namespace kubeconfig

Both namespaces must be watched: the records live in DETECTOR_NAMESPACE and the
Secret-change trigger needs KUBECONFIG_SECRET_NAMESPACE.
"""

import asyncio
import logging

import kopf

from clusterdetector import db, settings
from clusterdetector.clients import get_local_clients, invalidate_remote_clients
from clusterdetector.reconcile import reconcile_fleet

logger = logging.getLogger("cluster-detector")


class _HealthzFilter(logging.Filter):
    def filter(self, record):
        return "GET /healthz" not in record.getMessage()


logging.getLogger("aiohttp.access").addFilter(_HealthzFilter())

SEP = "⚡" * 30

_resync_task: dict = {"task": None}


async def run_pass(reason: str):
    logger.info(SEP)
    logger.info(f"🔭 fleet pass ({reason}) — records in ns={settings.DETECTOR_NAMESPACE}")
    core_v1, custom_api = get_local_clients()
    return await reconcile_fleet(core_v1, custom_api, settings.DETECTOR_NAMESPACE)


async def _periodic_resync_loop():
    """Background task: re-run the fleet pass every RESYNC_SECONDS."""
    while True:
        await asyncio.sleep(settings.RESYNC_SECONDS)
        try:
            await run_pass("resync")
        except Exception as e:
            logger.error(f"💥 [periodic] fleet pass failed: {type(e).__name__}: {e}")


def _is_kubeconfig_secret(name, namespace, **_):
    return name == settings.KUBECONFIG_SECRET_NAME and namespace == settings.KUBECONFIG_SECRET_NAMESPACE


# ---------------------------------------------------------------------------
# kopf handlers
# ---------------------------------------------------------------------------

@kopf.on.event("v1", "secrets", when=_is_kubeconfig_secret)
async def on_kubeconfig_event(event, name, **kwargs):
    """The aggregated kubeconfig changed: drop cached clients and re-check the fleet."""
    kind = event.get("type")  # None on the initial listing, already covered by the startup pass
    if kind == "DELETED":
        logger.warning(f"⚠️  kubeconfig Secret {settings.KUBECONFIG_SECRET_NAMESPACE}/{name} was deleted")
        return
    if kind not in ("ADDED", "MODIFIED"):
        return
    invalidate_remote_clients()
    try:
        await run_pass(f"Secret {name} {kind.lower()}")
    except Exception as e:
        logger.error(f"💥 fleet pass after Secret change failed: {type(e).__name__}: {e}")


@kopf.on.startup()
async def startup(**kwargs):
    logger.info(f"🚀 cluster-detector starting up — kubeconfig Secret "
                f"{settings.KUBECONFIG_SECRET_NAMESPACE}/{settings.KUBECONFIG_SECRET_NAME}")
    db.init_db()
    try:
        db.purge_old_records(days=settings.HISTORY_RETENTION_DAYS)
    except Exception as e:
        logger.warning(f"⚠️  Startup DB purge failed (non-fatal): {e}")

    try:
        await run_pass("startup")
    except Exception as e:
        logger.error(f"💥 initial fleet pass failed: {type(e).__name__}: {e}")

    _resync_task["task"] = asyncio.create_task(_periodic_resync_loop())
    logger.info(f"🔁 periodic resync started (every {settings.RESYNC_SECONDS}s, "
                f"probe timeout {settings.PROBE_TIMEOUT_SECONDS}s, prune={settings.PRUNE_ORPHANS})")
    logger.info("✅ cluster-detector ready")


@kopf.on.cleanup()
async def cleanup(**kwargs):
    task = _resync_task["task"]
    if task is not None:
        task.cancel()
        _resync_task["task"] = None
    logger.info("👋 cluster-detector stopped")


def run():
    """Console entry point: run the operator in the detector namespace."""
    kopf.run(standalone=True, namespaces=[settings.DETECTOR_NAMESPACE, settings.KUBECONFIG_SECRET_NAMESPACE])
