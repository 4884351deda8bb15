"""Command-prefix analysis and auto-approval policy."""
from .command_prefixes import (
    SAFE_COMMANDS,
    SUBCOMMAND_TOOLS,
    are_commands_safe,
    prefixes_for_tool_input,
    prefixes_of,
    split_chain,
)
from .policy import (
    SCOPE_ONCE,
    SCOPE_PREFIX,
    SCOPE_TOOL,
    ApprovalContext,
    ApprovalPolicy,
)

__all__ = [
    "SAFE_COMMANDS",
    "SUBCOMMAND_TOOLS",
    "are_commands_safe",
    "prefixes_for_tool_input",
    "prefixes_of",
    "split_chain",
    "SCOPE_ONCE",
    "SCOPE_PREFIX",
    "SCOPE_TOOL",
    "ApprovalContext",
    "ApprovalPolicy",
]
