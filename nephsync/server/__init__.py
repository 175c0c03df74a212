"""Replication endpoint: stores sealed records and serves the change feed."""

from .app import create_app
from .replica_store import PullPage, PushResult, ReplicaStore

__all__ = ["PullPage", "PushResult", "ReplicaStore", "create_app"]
