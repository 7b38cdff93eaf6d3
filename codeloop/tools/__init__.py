"""Tools package for codeloop."""

from codeloop.tools.registry import (
    Tool,
    ToolProgress,
    ToolRegistry,
    ToolResult,
)
from codeloop.tools.approval import ApprovalGate, ApprovalStore
from codeloop.tools.background import BackgroundProcessSupervisor, ProcessTool
from codeloop.tools.command_policy import check_command
from codeloop.tools.shell import ShellTool

__all__ = [
    "Tool",
    "ToolProgress",
    "ToolRegistry",
    "ToolResult",
    "ApprovalGate",
    "ApprovalStore",
    "BackgroundProcessSupervisor",
    "ProcessTool",
    "ShellTool",
    "check_command",
]
