"""Core automation engine components"""

# 只导出叶子模块；执行器、触发器与引擎依赖 ai 包，需按完整路径导入
from .cancellation import CancellationToken, ExecutionInvoker, wait_with_cancellation
from .parser import WorkflowParser
from .templating import evaluate_condition, flatten_payload, render_template
from .validator import ValidationIssue, ValidationReport, WorkflowValidator

__all__ = [
    "CancellationToken",
    "ExecutionInvoker",
    "wait_with_cancellation",
    "WorkflowParser",
    "evaluate_condition",
    "flatten_payload",
    "render_template",
    "ValidationIssue",
    "ValidationReport",
    "WorkflowValidator"
]
