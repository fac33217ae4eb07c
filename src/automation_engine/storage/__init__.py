"""Storage and repository interfaces"""

from .repository import (
    WorkflowRepository,
    ExecutionHistoryStore,
    ProcessedItemStore,
    InMemoryWorkflowRepository,
    InMemoryExecutionHistoryStore,
    InMemoryProcessedItemStore
)

__all__ = [
    "WorkflowRepository",
    "ExecutionHistoryStore",
    "ProcessedItemStore",
    "InMemoryWorkflowRepository",
    "InMemoryExecutionHistoryStore",
    "InMemoryProcessedItemStore"
]
