"""
Runtime configuration for cluster-detector.

Everything is read from environment variables once, at import time.
Numeric values that cannot be parsed abort the process: there is no sane
fallback for a typo in the deployment manifest.
"""

import os
import sys
import logging

logger = logging.getLogger("cluster-detector")

CRD_GROUP   = "replicate.jnytnai0613.github.io"
CRD_VERSION = "v1"
CRD_PLURAL  = "clusterdetectors"
CRD_KIND    = "ClusterDetector"
MANAGED_LABEL = f"{CRD_GROUP}/managed"


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() not in ("false", "0", "no")


def _env_number(name: str, default: str, cast=int):
    raw = os.environ.get(name, default)
    try:
        value = cast(raw)
        if value < 0:
            raise ValueError("must not be negative")
        return value
    except ValueError as e:
        logging.basicConfig()
        logger.critical(f"💥 Invalid value for {name}={raw!r}: {e} — cannot start")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Where things live
# ---------------------------------------------------------------------------
DETECTOR_NAMESPACE          = os.environ.get("DETECTOR_NAMESPACE", "resource-replicator-system")
KUBECONFIG_SECRET_NAMESPACE = os.environ.get("KUBECONFIG_SECRET_NAMESPACE", "kubeconfig")
KUBECONFIG_SECRET_NAME      = os.environ.get("KUBECONFIG_SECRET_NAME", "config")
KUBECONFIG_SECRET_KEY       = os.environ.get("KUBECONFIG_SECRET_KEY", "config")

# ---------------------------------------------------------------------------
# Probing and reconciliation
# ---------------------------------------------------------------------------
PROBE_TIMEOUT_SECONDS    = _env_number("PROBE_TIMEOUT_SECONDS", "2", float)
MAX_CONCURRENT_PROBES    = _env_number("MAX_CONCURRENT_PROBES", "0")  # 0 → fleet size
RESYNC_SECONDS           = _env_number("RESYNC_SECONDS", "30", float)
PRUNE_ORPHANS            = _env_bool("PRUNE_ORPHANS", "true")
WRITE_CONFLICT_RETRIES   = _env_number("WRITE_CONFLICT_RETRIES", "3")
CLIENT_CACHE_TTL_SECONDS = _env_number("CLIENT_CACHE_TTL_SECONDS", "3600", float)
HISTORY_RETENTION_DAYS   = _env_number("HISTORY_RETENTION_DAYS", "30")
