"""Exceptions raised by the agent control loop."""


class AgentLoopError(RuntimeError):
    """Raised when an agent invocation cannot produce a usable result."""


class MissingResultError(AgentLoopError):
    """Raised when the terminal-result slot is still empty after the graph ends."""


class ToolRegistryError(ValueError):
    """Raised when a tool registry is built with conflicting tool names."""
