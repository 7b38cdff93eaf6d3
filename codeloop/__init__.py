"""codeloop - a streaming, tool-calling coding agent core."""

__version__ = "0.1.0"

from codeloop.agent import Agent, AgentState
from codeloop.config import Config
from codeloop.events import AgentEvent
from codeloop.runtime_context import RuntimeContext

__all__ = ["Agent", "AgentEvent", "AgentState", "Config", "RuntimeContext", "__version__"]
