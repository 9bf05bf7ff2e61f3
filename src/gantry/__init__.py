"""Gantry - run CI workflow definitions locally."""

__version__ = "0.1.0"

from gantry.engine.dag import parse, parse_yaml_string
from gantry.engine.scheduler import RunResult, WorkflowRun, execute_workflow
from gantry.engine.triggers import Event

__all__ = [
    "Event",
    "RunResult",
    "WorkflowRun",
    "execute_workflow",
    "parse",
    "parse_yaml_string",
    "__version__",
]
