"""
ContentFlow - multi-stage content approval engine.
"""
from .responses import EngineError, EngineResult
from .workflow import (
    ContentStateMachine,
    NotificationIntentGenerator,
    RoutingEngine,
    WorkflowExecutionEngine,
)

__version__ = "0.1.0"

__all__ = [
    "ContentStateMachine",
    "EngineError",
    "EngineResult",
    "NotificationIntentGenerator",
    "RoutingEngine",
    "WorkflowExecutionEngine",
]
