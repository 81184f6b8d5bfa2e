"""Claude Agent MCP Server - Claude behind a small set of MCP tools.

Conversation state lives in memory; URLs, files and commands pass through
security guards before they reach the model or the caller.
"""

__version__ = "1.0.0"
