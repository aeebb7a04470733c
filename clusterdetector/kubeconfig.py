"""
Reading the aggregated kubeconfig that describes the fleet.

The document is stored in a Secret on the local cluster. It is decoded as
YAML and split into two ordered lists:

* ``RemoteAPIServer`` — one per ``clusters`` entry (name + server URL), used
  to probe liveness.
* ``TargetCluster`` — one per ``contexts`` entry (context, cluster and user
  names), used to key the ClusterDetector records.

Each entry is read on its own: a context without a ``user`` gets an empty
user, never the one of the entry before it.
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field

import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException

from clusterdetector import settings
from clusterdetector.exceptions import KubeconfigReadError

logger = logging.getLogger("cluster-detector")


@dataclass(frozen=True)
class RemoteAPIServer:
    name: str
    endpoint: str


@dataclass(frozen=True)
class TargetCluster:
    context_name: str
    cluster_name: str
    user_name: str


@dataclass
class ParsedKubeconfig:
    raw: str
    config: dict
    servers: list[RemoteAPIServer] = field(default_factory=list)
    targets: list[TargetCluster] = field(default_factory=list)


def servers_by_name(servers: list[RemoteAPIServer]) -> dict[str, RemoteAPIServer]:
    """Index endpoints by cluster name. A later duplicate replaces an earlier one."""
    index: dict[str, RemoteAPIServer] = {}
    for server in servers:
        if server.name in index:
            logger.warning(f"⚠️  duplicate cluster name {server.name!r} in kubeconfig — "
                           f"{server.endpoint or '<no server>'} replaces {index[server.name].endpoint or '<no server>'}")
        index[server.name] = server
    return index


def _entries(kc: dict, section: str) -> list[dict]:
    entries = kc.get(section) or []
    if not isinstance(entries, list):
        logger.warning(f"⚠️  kubeconfig section {section!r} is not a list — ignored")
        return []
    return [e for e in entries if isinstance(e, dict)]


def _field(entry: dict, body_key: str, name: str) -> str:
    body = entry.get(body_key) or {}
    if not isinstance(body, dict):
        return ""
    value = body.get(name)
    return str(value) if value is not None else ""


def parse_kubeconfig(raw: str) -> ParsedKubeconfig:
    """Decode a kubeconfig document into ordered endpoint and context records.

    Only an undecodable document is an error. Entries without a name are
    skipped; entries with a missing server, cluster or user are kept with an
    empty value so that they surface downstream as a failed join.
    """
    try:
        kc = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise KubeconfigReadError(f"invalid YAML: {e}") from e
    if not isinstance(kc, dict):
        raise KubeconfigReadError("not a valid kubeconfig document")

    servers: list[RemoteAPIServer] = []
    for entry in _entries(kc, "clusters"):
        name = str(entry.get("name") or "")
        if not name:
            logger.warning("⚠️  skipping clusters entry without a name")
            continue
        endpoint = _field(entry, "cluster", "server")
        if not endpoint:
            logger.warning(f"⚠️  cluster {name!r} has no server URL")
        servers.append(RemoteAPIServer(name=name, endpoint=endpoint))

    targets: list[TargetCluster] = []
    for entry in _entries(kc, "contexts"):
        name = str(entry.get("name") or "")
        if not name:
            logger.warning("⚠️  skipping contexts entry without a name")
            continue
        target = TargetCluster(
            context_name=name,
            cluster_name=_field(entry, "context", "cluster"),
            user_name=_field(entry, "context", "user"),
        )
        if not target.cluster_name or not target.user_name:
            logger.warning(f"⚠️  [{name}] context is missing its cluster or user reference "
                           f"(cluster={target.cluster_name!r} user={target.user_name!r})")
        targets.append(target)

    return ParsedKubeconfig(raw=raw, config=kc, servers=servers, targets=targets)


def read_kubeconfig(
    core_v1: client.CoreV1Api,
    namespace: str | None = None,
    name: str | None = None,
    key: str | None = None,
) -> ParsedKubeconfig:
    """Fetch the aggregated kubeconfig Secret and parse it."""
    namespace = namespace or settings.KUBECONFIG_SECRET_NAMESPACE
    name = name or settings.KUBECONFIG_SECRET_NAME
    key = key or settings.KUBECONFIG_SECRET_KEY

    try:
        secret = core_v1.read_namespaced_secret(name=name, namespace=namespace)
    except ApiException as e:
        raise KubeconfigReadError(f"could not read Secret {namespace}/{name}: {e.status} {e.reason}") from e

    data = secret.data or {}
    if key not in data:
        raise KubeconfigReadError(f"Secret {namespace}/{name} has no key {key!r}")
    try:
        raw = base64.b64decode(data[key], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise KubeconfigReadError(f"Secret {namespace}/{name} key {key!r} is not base64-encoded UTF-8: {e}") from e

    parsed = parse_kubeconfig(raw)
    logger.info(f"📖 read kubeconfig {namespace}/{name}: "
                f"{len(parsed.servers)} clusters, {len(parsed.targets)} contexts")
    return parsed
