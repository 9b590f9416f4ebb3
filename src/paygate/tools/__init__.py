from paygate.tools.builtin import register_builtin_tools
from paygate.tools.payments import register_payment_tools
from paygate.tools.registry import RegisteredTool, ToolRegistry

__all__ = ["RegisteredTool", "ToolRegistry", "register_builtin_tools", "register_payment_tools"]
