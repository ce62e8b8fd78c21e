"""Action execution engines.

This package provides:
- Single-action apply/reverse primitives
- Rule executor (deletes go through staging)
- Staging pipeline: stage, sweep, rescue, execute-now
- Undo of automated actions within the undo window
"""

from mailpilot.engine.actions import apply_action, reverse_action, sort_actions
from mailpilot.engine.executor import ActionExecutor, ExecutionReport
from mailpilot.engine.staging import (
    ExecutionOutcome,
    NotificationHook,
    RescueResult,
    StagingPipeline,
    SweepResult,
)
from mailpilot.engine.undo import (
    RuleExecutedUndo,
    StagedExecutedUndo,
    StillStagedUndo,
    UndoOutcome,
    UndoResult,
    UndoService,
    plan_undo,
)

__all__ = [
    # Actions
    "apply_action",
    "reverse_action",
    "sort_actions",
    # Executor
    "ActionExecutor",
    "ExecutionReport",
    # Staging
    "ExecutionOutcome",
    "NotificationHook",
    "RescueResult",
    "StagingPipeline",
    "SweepResult",
    # Undo
    "RuleExecutedUndo",
    "StagedExecutedUndo",
    "StillStagedUndo",
    "UndoOutcome",
    "UndoResult",
    "UndoService",
    "plan_undo",
]
