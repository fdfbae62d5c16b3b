"""
Oracle Router package.

On-chain request router for oracle data with escrowed fees, and the
provider-side Watcher that mirrors its events and fulfils requests.
"""

from .config import WatcherConfig
from .models import DataRequest, JobRecord, JobStatus
from .router import Chain, ConsumerBase, Router, Token
from .watcher import JobStore, RouterWatcher

__all__ = [
    "Chain",
    "ConsumerBase",
    "DataRequest",
    "JobRecord",
    "JobStatus",
    "JobStore",
    "Router",
    "RouterWatcher",
    "Token",
    "WatcherConfig",
]
__version__ = "0.1.0"
