from .automation_validator import (
    UnknownRegistryTypeError,
    parse_and_validate_automation,
    parse_and_validate_step,
)
from .graph import GraphCache, WorkflowGraph

__all__ = [
    "GraphCache",
    "UnknownRegistryTypeError",
    "WorkflowGraph",
    "parse_and_validate_automation",
    "parse_and_validate_step",
]
