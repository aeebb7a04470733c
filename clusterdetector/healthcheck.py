"""
Liveness probing of remote API servers.

A cluster is considered up when ``GET <server>/livez`` answers with a 2xx
status before the deadline. The request is anonymous and skips certificate
verification: it only checks that the control plane is alive, it does not
authenticate against it.

See https://kubernetes.io/docs/reference/using-api/health-checks/
"""

import asyncio
import logging
from enum import Enum

import httpx

from clusterdetector import settings
from clusterdetector.exceptions import ProbeError
from clusterdetector.kubeconfig import RemoteAPIServer

logger = logging.getLogger("cluster-detector")

LIVEZ_PATH = "/livez"


class ClusterStatus(str, Enum):
    RUNNING = "Running"
    UNKNOWN = "Unknown"


def livez_url(server: RemoteAPIServer) -> str:
    return f"{server.endpoint.rstrip('/')}{LIVEZ_PATH}"


async def _get_livez(url: str, timeout: float) -> httpx.Response:
    async with httpx.AsyncClient(verify=False, timeout=timeout) as http:
        return await http.get(url)


async def check_livez(server: RemoteAPIServer, timeout: float | None = None) -> None:
    """Raise ProbeError unless the server's liveness endpoint answers 2xx in time.

    ``timeout`` bounds the whole exchange, connection setup included.
    """
    timeout = settings.PROBE_TIMEOUT_SECONDS if timeout is None else timeout
    if not server.endpoint:
        raise ProbeError(server.name, "no server URL")

    url = livez_url(server)
    try:
        response = await asyncio.wait_for(_get_livez(url, timeout), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProbeError(server.name, f"no answer from {url} within {timeout}s") from e
    except httpx.TimeoutException as e:
        raise ProbeError(server.name, f"no answer from {url} within {timeout}s: {e}") from e
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        # ValueError covers hostnames idna refuses to encode
        raise ProbeError(server.name, f"{type(e).__name__} on {url}: {e}") from e

    logger.debug(f"🩺 cluster={server.name} {url} → {response.status_code} {response.text.strip()!r}")
    if not response.is_success:
        raise ProbeError(server.name, f"{url} answered HTTP {response.status_code}")


async def classify(server: RemoteAPIServer, timeout: float | None = None) -> tuple[ClusterStatus, str | None]:
    """Probe a remote API server and return its status with the failure reason, if any."""
    try:
        await check_livez(server, timeout=timeout)
    except ProbeError as e:
        logger.warning(f"🔌 health check failed — {e}")
        return ClusterStatus.UNKNOWN, str(e)
    logger.info(f"💚 cluster={server.name} is alive ({server.endpoint})")
    return ClusterStatus.RUNNING, None


async def probe(server: RemoteAPIServer, timeout: float | None = None) -> ClusterStatus:
    """Classify a remote API server as Running or Unknown."""
    status, _ = await classify(server, timeout=timeout)
    return status
