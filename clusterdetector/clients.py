"""
Kubernetes client helpers for cluster-detector.

Local clients talk to the cluster the operator runs in (records, Secret).
Remote clients are built per context straight from the in-memory
kubeconfig, without writing the document to a file first.
"""

import time
import logging

from kubernetes import client, config

from clusterdetector import settings
from clusterdetector.exceptions import RemoteClientError
from clusterdetector.kubeconfig import ParsedKubeconfig, TargetCluster, read_kubeconfig

logger = logging.getLogger("cluster-detector")


def get_local_clients() -> tuple[client.CoreV1Api, client.CustomObjectsApi]:
    """Return (CoreV1Api, CustomObjectsApi) for the local cluster."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    api_client = client.ApiClient()
    return client.CoreV1Api(api_client=api_client), client.CustomObjectsApi(api_client=api_client)


def _build_client_for_context(kubeconfig: dict, context_name: str) -> client.CoreV1Api:
    cfg = client.Configuration()
    config.load_kube_config_from_dict(
        config_dict=kubeconfig,
        context=context_name,
        client_configuration=cfg,
        persist_config=False,
    )
    return client.CoreV1Api(api_client=client.ApiClient(configuration=cfg))


def create_remote_clients(
    kubeconfig: ParsedKubeconfig, targets: list[TargetCluster] | None = None
) -> dict[str, client.CoreV1Api]:
    """Build one CoreV1Api per context, keyed by context name.

    All or nothing: the first context that cannot be loaded aborts the
    batch with RemoteClientError.
    """
    targets = kubeconfig.targets if targets is None else targets
    clients: dict[str, client.CoreV1Api] = {}
    for target in targets:
        try:
            clients[target.context_name] = _build_client_for_context(kubeconfig.config, target.context_name)
        except (config.ConfigException, ValueError, TypeError, KeyError) as e:
            logger.error(f"💥 [{target.context_name}] could not build client for cluster={target.cluster_name}: {e}")
            raise RemoteClientError(target.context_name, str(e)) from e
        logger.debug(f"🔧 [{target.context_name}] client ready for cluster={target.cluster_name} user={target.user_name}")
    return clients


# ---------------------------------------------------------------------------
# Client cache
# ---------------------------------------------------------------------------
_CLIENT_CACHE: dict = {"clients": None, "expires": 0.0}


def get_remote_clients(core_v1: client.CoreV1Api | None = None) -> dict[str, client.CoreV1Api]:
    """Return the per-context clients of the current kubeconfig Secret, with caching."""
    now = time.monotonic()
    if _CLIENT_CACHE["clients"] is not None and now < _CLIENT_CACHE["expires"]:
        return _CLIENT_CACHE["clients"]

    if core_v1 is None:
        core_v1, _ = get_local_clients()
    parsed = read_kubeconfig(core_v1)
    clients = create_remote_clients(parsed)
    logger.info(f"🔧 built clients for {len(clients)} remote contexts")
    _CLIENT_CACHE["clients"] = clients
    _CLIENT_CACHE["expires"] = now + settings.CLIENT_CACHE_TTL_SECONDS
    return clients


def invalidate_remote_clients() -> None:
    """Force a rebuild on the next get_remote_clients() call."""
    _CLIENT_CACHE["clients"] = None
    _CLIENT_CACHE["expires"] = 0.0
