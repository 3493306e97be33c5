from threadloop.tools.protocol import HttpToolExecutor, ToolExecutor, tool_message
from threadloop.tools.runner import ToolRunner

__all__ = ["HttpToolExecutor", "ToolExecutor", "ToolRunner", "tool_message"]
