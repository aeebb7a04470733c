"""cluster-detector: liveness of remote clusters published as ClusterDetector records."""

__version__ = "0.1.0"
