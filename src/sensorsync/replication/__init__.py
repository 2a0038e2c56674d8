"""Pull replication of remote sessions."""

from .bandwidth import BandwidthLimiter
from .client import RemoteClient
from .puller import MirrorStats, PassResult, ReplicationPuller

__all__ = ["BandwidthLimiter", "RemoteClient", "ReplicationPuller", "MirrorStats", "PassResult"]
