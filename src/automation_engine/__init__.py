"""
Local Automation Engine - 触发器/动作工作流自动化引擎
"""

__version__ = "0.1.0"

from .core.engine import AutomationEngine
from .core.executor import WorkflowExecutor
from .core.triggers import TriggerEvaluator
from .core.scheduler import TriggerScheduler, AsyncioJobRunner
from .core.parser import WorkflowParser
from .ai.summarizer import ResilientSummarizer
from .config import EngineSettings
from .models.workflow import Workflow
from .models.execution import ExecutionResult, TriggerExecutionResult

__all__ = [
    "AutomationEngine",
    "WorkflowExecutor",
    "TriggerEvaluator",
    "TriggerScheduler",
    "AsyncioJobRunner",
    "WorkflowParser",
    "ResilientSummarizer",
    "EngineSettings",
    "Workflow",
    "ExecutionResult",
    "TriggerExecutionResult"
]
