"""Remote client and async plumbing shared by the sync components."""

from .async_utils import run_sync
from .client import RemoteReplicaClient
from .scheduling import AsyncioScheduler, Scheduler

__all__ = [
    "AsyncioScheduler",
    "RemoteReplicaClient",
    "Scheduler",
    "run_sync",
]
