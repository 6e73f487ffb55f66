"""Shopflow: durable, priority-tiered workflows for an auto detailing shop."""

from .contracts import (
    CompletionEvent,
    Priority,
    RetryPolicy,
    RunStatus,
    StepContext,
    WorkflowRun,
    action,
    mutation,
    query,
)
from .manager import WorkflowManager
from .persistence import get_journal
from .pools import WorkPools
from .runtime import Runtime, build_runtime
from .services import ShopServices

__version__ = "0.1.0"
__all__ = [
    "CompletionEvent",
    "Priority",
    "RetryPolicy",
    "RunStatus",
    "StepContext",
    "WorkflowRun",
    "action",
    "mutation",
    "query",
    "WorkflowManager",
    "WorkPools",
    "ShopServices",
    "Runtime",
    "build_runtime",
    "get_journal",
]
