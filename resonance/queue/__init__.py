"""Durable job queues, worker pools and the retry state machine."""

from .dispatcher import Dispatcher, PoolBinding, Processor
from .jobs import JobContext, StageResult
from .manager import QueueHealth, QueueManager
from .persistence import QueueJobDTO, QueueStore
from .registry import WorkerRegistry
from .retry import BackoffPolicy, RequeueAfter, TerminalFail, next_state

__all__ = [
    "BackoffPolicy",
    "Dispatcher",
    "JobContext",
    "PoolBinding",
    "Processor",
    "QueueHealth",
    "QueueJobDTO",
    "QueueManager",
    "QueueStore",
    "RequeueAfter",
    "StageResult",
    "TerminalFail",
    "WorkerRegistry",
    "next_state",
]
