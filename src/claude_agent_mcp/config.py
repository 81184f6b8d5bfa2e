"""Environment configuration and logging setup.

Read once at startup; the resulting GatewayConfig is immutable.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigurationError
from .limits import SecurityLimits

LOGGER_NAME = "claude-agent-mcp"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_MODEL = "claude-sonnet-4-5"
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant with access to various tools and capabilities."

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off", ""}


@dataclass(frozen=True)
class McpServerConfig:
    """A nested MCP server handed to the Claude Agent SDK."""

    name: str
    transport: str  # "stdio" | "http"
    command: Optional[str] = None
    args: tuple = ()
    env: Mapping[str, str] = field(default_factory=dict)
    url: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    def to_sdk(self) -> dict:
        if self.transport == "http":
            return {"type": "http", "url": self.url, "headers": dict(self.headers)}
        return {"type": "stdio", "command": self.command, "args": list(self.args), "env": dict(self.env)}


@dataclass(frozen=True)
class GatewayConfig:
    provider: str = "anthropic"
    api_key: str = ""
    model: str = DEFAULT_MODEL
    max_turns: int = 10
    query_timeout: int = 300  # seconds
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    mcp_servers: tuple = ()
    enable_conversations: bool = False
    session_timeout: int = 3600  # seconds
    max_history: int = 10
    enable_file_write: bool = False
    enable_command_execution: bool = False
    allowed_directories: tuple = ()
    log_dir: str = "./logs"
    disable_logging: bool = False
    log_to_stderr: bool = False
    limits: SecurityLimits = field(default_factory=SecurityLimits)


def _get_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be true or false, got '{raw}'")


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _parse_mcp_servers(raw: Optional[str]) -> tuple:
    if not raw:
        return ()
    try:
        entries = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Failed to parse CLAUDE_MCP_SERVERS JSON: {e}")
    if not isinstance(entries, list):
        raise ConfigurationError("CLAUDE_MCP_SERVERS must be a JSON list")

    servers = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ConfigurationError("Each CLAUDE_MCP_SERVERS entry needs a name")
        transport = entry.get("transport", "stdio")
        if transport == "stdio" and not entry.get("command"):
            raise ConfigurationError(f"MCP server '{entry['name']}' needs a command")
        if transport == "http" and not entry.get("url"):
            raise ConfigurationError(f"MCP server '{entry['name']}' needs a url")
        if transport not in ("stdio", "http"):
            raise ConfigurationError(f"MCP server '{entry['name']}' has unknown transport '{transport}'")
        servers.append(McpServerConfig(
            name=entry["name"],
            transport=transport,
            command=entry.get("command"),
            args=tuple(entry.get("args") or ()),
            env=dict(entry.get("env") or {}),
            url=entry.get("url"),
            headers=dict(entry.get("headers") or {}),
        ))
    return tuple(servers)


def _detect_provider(env: Mapping[str, str]) -> str:
    if _get_bool(env, "CLAUDE_CODE_USE_BEDROCK"):
        return "bedrock"
    if _get_bool(env, "CLAUDE_CODE_USE_VERTEX"):
        return "vertex"
    return "anthropic"


def load_config(environ: Optional[Mapping[str, Any]] = None) -> GatewayConfig:
    """Build the gateway configuration from environment variables.

    Raises ConfigurationError for anything that should stop the process.
    """
    env = os.environ if environ is None else environ

    provider = _detect_provider(env)
    api_key = env.get("ANTHROPIC_API_KEY", "")
    if provider == "anthropic" and not api_key:
        raise ConfigurationError("ANTHROPIC_API_KEY environment variable is required")

    extra_dirs = tuple(
        d for d in env.get("CLAUDE_ALLOWED_DIRECTORIES", "").split(os.pathsep) if d.strip()
    )

    limits = SecurityLimits(
        max_prompt_length=_get_int(env, "CLAUDE_MAX_PROMPT_LENGTH", SecurityLimits.max_prompt_length),
        max_query_length=_get_int(env, "CLAUDE_MAX_QUERY_LENGTH", SecurityLimits.max_query_length),
    )

    return GatewayConfig(
        provider=provider,
        api_key=api_key,
        model=env.get("CLAUDE_MODEL") or DEFAULT_MODEL,
        max_turns=_get_int(env, "CLAUDE_MAX_TURNS", 10),
        query_timeout=_get_int(env, "CLAUDE_QUERY_TIMEOUT", 300),
        system_prompt=env.get("CLAUDE_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
        mcp_servers=_parse_mcp_servers(env.get("CLAUDE_MCP_SERVERS")),
        enable_conversations=_get_bool(env, "CLAUDE_ENABLE_CONVERSATIONS"),
        session_timeout=_get_int(env, "CLAUDE_SESSION_TIMEOUT", 3600),
        max_history=_get_int(env, "CLAUDE_MAX_HISTORY", 10),
        enable_file_write=_get_bool(env, "CLAUDE_ENABLE_FILE_WRITE"),
        enable_command_execution=_get_bool(env, "CLAUDE_ENABLE_COMMAND_EXECUTION"),
        allowed_directories=extra_dirs,
        log_dir=env.get("CLAUDE_LOG_DIR") or "./logs",
        disable_logging=_get_bool(env, "CLAUDE_DISABLE_LOGGING"),
        log_to_stderr=_get_bool(env, "CLAUDE_LOG_TO_STDERR"),
        limits=limits,
    )


def configure_logging(config: GatewayConfig) -> logging.Logger:
    """Attach the gateway log handler. stdout is reserved for the MCP stream."""
    root = logging.getLogger(LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.propagate = False
    root.setLevel(logging.INFO)

    if config.disable_logging:
        # Errors still reach stderr so a broken server is not silent
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.ERROR)
    elif config.log_to_stderr:
        handler = logging.StreamHandler(sys.stderr)
    else:
        log_dir = Path(config.log_dir)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_dir / "general.log", encoding="utf-8")
        except OSError as e:
            print(f"Failed to create log directory {log_dir}: {e}", file=sys.stderr)
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.ERROR)

    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    return root
