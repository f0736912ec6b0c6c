"""Tools the model can invoke.

Public API: ToolRegistry and its types. Concrete tools are registered by
the embedding application.
"""

from hive.tools.registry import ApprovalContext, Tool, ToolRegistry

__all__ = [
    "ApprovalContext",
    "Tool",
    "ToolRegistry",
]
