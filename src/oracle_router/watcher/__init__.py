"""Off-chain Watcher: job store, event ingestion and fulfilment workers."""

from .chain_client import LocalRouterClient, Web3RouterClient
from .job_store import JobStore
from .watcher import RouterWatcher

__all__ = ["JobStore", "LocalRouterClient", "RouterWatcher", "Web3RouterClient"]
