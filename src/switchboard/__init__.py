"""Switchboard: a control plane routing chat conversations to isolated agent workers."""

__version__ = "0.1.0"

from switchboard.actions import ActionChannel
from switchboard.cancellation import CancelToken
from switchboard.config import SwitchboardConfig
from switchboard.lifecycle import PersistentWorkerManager, WorkerState
from switchboard.mailbox import Mailbox
from switchboard.orchestrator import Orchestrator
from switchboard.pool import EphemeralPool
from switchboard.registry import NamespaceRegistry
from switchboard.router import Router
from switchboard.scheduler import Scheduler
from switchboard.store import Store
from switchboard.ticker import Ticker

__all__ = [
    "ActionChannel",
    "CancelToken",
    "SwitchboardConfig",
    "PersistentWorkerManager",
    "WorkerState",
    "Mailbox",
    "Orchestrator",
    "EphemeralPool",
    "NamespaceRegistry",
    "Router",
    "Scheduler",
    "Store",
    "Ticker",
]
