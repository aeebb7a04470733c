class ClusterDetectorError(Exception):
    pass


class KubeconfigReadError(ClusterDetectorError):
    """The aggregated kubeconfig could not be fetched or decoded."""


class RemoteClientError(ClusterDetectorError):
    """A client for one of the remote contexts could not be built."""

    def __init__(self, context: str, message: str):
        super().__init__(f"context {context!r}: {message}")
        self.context = context


class ProbeError(ClusterDetectorError):
    """A remote API server did not answer its liveness endpoint successfully."""

    def __init__(self, cluster: str, message: str):
        super().__init__(f"cluster {cluster!r}: {message}")
        self.cluster = cluster
