#!/usr/bin/env python3
"""
Claude Agent MCP Server - Claude exposed as a small set of MCP tools.

Tools: query (multi-turn, session aware), search/fetch (cached bridge),
web_fetch (SSRF-guarded), read_file, and the opt-in write_file and
execute_command. Each tool call passes the input limits and trust guards
before any state is touched or any external call is made.
"""

import asyncio
import functools
import json
import logging
import os
import re
import signal
import sys
import time
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from . import __version__
from .claude_service import ClaudeService
from .config import LOGGER_NAME, GatewayConfig, configure_logging, load_config
from .conversations import ConversationStore, Message
from .document_cache import DocumentCache, make_document, new_document_id
from .errors import ConfigurationError, GatewayError, SecurityError, ToolExecutionError, ValidationError
from .limits import (
    estimate_decoded_size,
    sanitize_for_logging,
    validate_multimodal_parts,
    validate_prompt,
    validate_query,
    validate_text,
)
from .path_guard import (
    assert_directory_allowed,
    assert_path_allowed,
    check_file_readable,
    check_file_writable,
)
from .web_fetch import WebFetcher

logger = logging.getLogger(LOGGER_NAME)

# File and command limits
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB per read
MAX_WRITE_SIZE = 10 * 1024 * 1024  # 10MB per write
FILE_OPERATION_TIMEOUT = 30  # seconds
COMMAND_TIMEOUT = 30  # seconds, wall clock
MAX_COMMAND_LENGTH = 10_000
MAX_OUTPUT_SIZE = 100_000  # bytes read from a command, chars returned
OUTPUT_CHUNK_SIZE = 64 * 1024
MAX_STDERR_EXCERPT = 2_000
MAX_SEARCH_RESULTS = 3

SEARCH_PROMPT = (
    "Search and provide information about: {query}.\n"
    "Return your response as a structured list of relevant topics or documents with brief descriptions."
)

ToolHandler = Callable[[dict], Awaitable[list[TextContent]]]


def _text_response(data: Any) -> list[TextContent]:
    """Create a JSON text response."""
    if isinstance(data, str):
        return [TextContent(type="text", text=data)]
    return [TextContent(type="text", text=json.dumps(data, indent=2))]


def _error_response(code: str, message: str, internal_details: Any = None, **extra: Any) -> list[TextContent]:
    """Create a structured error response.

    Full details are logged server-side (sanitized); the client only gets
    the code and a message built from safe fields.
    """
    if internal_details is not None:
        logger.error(f"Error {code}: {message} | Details: {sanitize_for_logging(internal_details)}")
    else:
        logger.error(f"Error {code}: {message}")
    return _text_response({"error": code, "message": message, **extra})


def _log_event(message: str, **data: Any) -> None:
    """Log an INFO event with its sanitized structured context."""
    if data:
        logger.info(f"{message} {json.dumps(sanitize_for_logging(data), default=str)}")
    else:
        logger.info(message)


def _require_str(arguments: dict, name: str) -> str:
    value = arguments.get(name)
    if not isinstance(value, str):
        raise ValidationError(f"'{name}' is required and must be a string", code="invalid_arguments")
    return value


def _optional_str(arguments: dict, name: str) -> Optional[str]:
    value = arguments.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"'{name}' must be a string", code="invalid_arguments")
    return value


def _preview(value: str, limit: int = 100) -> str:
    return value if len(value) <= limit else value[:limit] + "..."


def compose_prompt(prompt: str, parts: list) -> str:
    """Append text parts and describe inline attachments after the prompt."""
    sections = [prompt]
    for part in parts:
        if isinstance(part.get("text"), str) and part["text"].strip():
            sections.append(part["text"])
        inline = part.get("inlineData")
        if isinstance(inline, dict) and isinstance(inline.get("data"), str):
            mime_type = inline.get("mimeType") or "application/octet-stream"
            size = estimate_decoded_size(inline["data"])
            sections.append(f"[Attached {mime_type}: {size} bytes of inline data]")
    return "\n\n".join(sections)


def parse_search_results(response_text: str, query: str, now: Optional[float] = None) -> list[dict]:
    """Build up to three result stubs from the response; never returns empty."""
    now = time.time() if now is None else now
    slug = quote(re.sub(r"\s+", "-", query.strip()), safe="-")
    lines = [line for line in response_text.split("\n") if line.strip()]

    results = []
    for i, line in enumerate(lines[:MAX_SEARCH_RESULTS]):
        if len(line) > 10:
            results.append({
                "id": new_document_id(i, now),
                "title": line[:100].strip(),
                "url": f"https://claude-search/{slug}/{i}",
            })

    if not results:
        results.append({
            "id": new_document_id(0, now),
            "title": query,
            "url": f"https://claude-search/{slug}",
        })
    return results


async def _run_blocking(func: Callable, *args: Any, timeout: float = FILE_OPERATION_TIMEOUT, **kwargs: Any) -> Any:
    """Run blocking I/O in the default executor, bounded by ``timeout``."""
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(
        loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
        timeout=timeout,
    )


def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


async def _collect_output(process: asyncio.subprocess.Process, limit: int) -> tuple[bytes, bytes, bool]:
    """Read stdout and stderr until exit, stopping the process once ``limit`` bytes arrive.

    Returns (stdout, stderr, truncated).
    """
    stdout, stderr = bytearray(), bytearray()
    truncated = False

    async def pump(stream: asyncio.StreamReader, buffer: bytearray) -> None:
        nonlocal truncated
        while True:
            chunk = await stream.read(OUTPUT_CHUNK_SIZE)
            if not chunk:
                return
            buffer.extend(chunk)
            if len(stdout) + len(stderr) > limit:
                if not truncated:
                    truncated = True
                    _kill_process_tree(process)
                return

    await asyncio.gather(pump(process.stdout, stdout), pump(process.stderr, stderr))
    await process.wait()
    return bytes(stdout), bytes(stderr), truncated


def _command_env() -> dict[str, str]:
    """Minimal environment for child processes; no credentials."""
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}
    for name in ("HOME", "LANG", "TMPDIR", "SYSTEMROOT"):
        if name in os.environ:
            env[name] = os.environ[name]
    return env


# Shared schema fragments for tool definitions
PARTS_SCHEMA = {
    "type": "array",
    "description": "Optional multimodal parts: {text} or {inlineData: {mimeType, data (base64)}}",
    "items": {
        "type": "object",
        "properties": {
            "text": {"type": "string"},
            "inlineData": {
                "type": "object",
                "properties": {
                    "mimeType": {"type": "string"},
                    "data": {"type": "string", "description": "Base64-encoded payload"},
                },
                "required": ["data"],
            },
        },
    },
}

BASE_TOOL_DEFINITIONS = [
    Tool(
        name="query",
        description="Send a query to Claude AI assistant. Supports multi-turn conversations with session management.",
        inputSchema={
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "The text prompt to send to Claude"},
                "sessionId": {
                    "type": "string",
                    "description": "Optional conversation session ID for multi-turn conversations",
                },
                "parts": PARTS_SCHEMA,
            },
            "required": ["prompt"],
        },
    ),
    Tool(
        name="search",
        description="Search for information with Claude. Returns result stubs whose ids can be passed to fetch.",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
            },
            "required": ["query"],
        },
    ),
    Tool(
        name="fetch",
        description="Fetch the full document for a search result id. Ids expire; search again if not found.",
        inputSchema={
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Document id from a previous search"},
            },
            "required": ["id"],
        },
    ),
    Tool(
        name="read_file",
        description="Read content from a file. Files must be in allowed directories (current working directory, Documents, Downloads, Desktop).",
        inputSchema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to read"},
            },
            "required": ["path"],
        },
    ),
    Tool(
        name="web_fetch",
        description="Fetch content from a URL. Only HTTPS URLs are allowed. External content is tagged for security.",
        inputSchema={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "HTTPS URL to fetch (HTTP not allowed for security)"},
                "extract": {
                    "type": "boolean",
                    "description": "Extract main content from HTML (default: true)",
                    "default": True,
                },
            },
            "required": ["url"],
        },
    ),
]

WRITE_FILE_TOOL = Tool(
    name="write_file",
    description="Write content to a file. Files must be in allowed directories. Requires CLAUDE_ENABLE_FILE_WRITE=true.",
    inputSchema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file to write"},
            "content": {"type": "string", "description": "Content to write to the file"},
        },
        "required": ["path", "content"],
    },
)

EXECUTE_COMMAND_TOOL = Tool(
    name="execute_command",
    description="Execute a shell command. Requires CLAUDE_ENABLE_COMMAND_EXECUTION=true. Use with caution.",
    inputSchema={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The shell command to execute"},
            "workingDirectory": {"type": "string", "description": "Working directory for command execution"},
        },
        "required": ["command"],
    },
)


class ToolHandlers:
    """One coroutine per exposed tool, plus the error boundary around them.

    The conversation store and document cache are injected so each test
    (or server instance) owns its own state.
    """

    def __init__(
        self,
        config: GatewayConfig,
        claude: ClaudeService,
        conversations: Optional[ConversationStore] = None,
        cache: Optional[DocumentCache] = None,
        web_fetcher: Optional[WebFetcher] = None,
    ):
        self.config = config
        self.claude = claude
        self.conversations = conversations
        self.cache = cache if cache is not None else DocumentCache(
            max_size=config.limits.max_cache_size,
            ttl_seconds=config.limits.cache_ttl_seconds,
            eviction_buffer=config.limits.cache_eviction_buffer,
        )
        self.web_fetcher = web_fetcher or WebFetcher()

        # Tool dispatch table
        self.handlers: dict[str, ToolHandler] = {
            "query": self.handle_query,
            "search": self.handle_search,
            "fetch": self.handle_fetch,
            "read_file": self.handle_read_file,
            "web_fetch": self.handle_web_fetch,
            "write_file": self.handle_write_file,
            "execute_command": self.handle_execute_command,
        }

    def tool_definitions(self) -> list[Tool]:
        tools = list(BASE_TOOL_DEFINITIONS)
        if self.config.enable_file_write:
            tools.append(WRITE_FILE_TOOL)
        if self.config.enable_command_execution:
            tools.append(EXECUTE_COMMAND_TOOL)
        return tools

    async def call_tool(self, name: str, arguments: Optional[dict]) -> list[TextContent]:
        """Route a tool call; every failure becomes a structured error payload."""
        arguments = arguments or {}
        _log_event(f"Tool call: {_preview(str(name))}", arguments=arguments)

        handler = self.handlers.get(name)
        if handler is None:
            return _error_response("unknown_tool", f"Unknown tool: {_preview(str(name))}")

        try:
            result = await handler(arguments)
        except ToolExecutionError as e:
            return _error_response(e.code, e.message, tool=e.tool_name)
        except GatewayError as e:
            return _error_response(e.code, e.message)
        except Exception as e:
            logger.error(f"Unexpected error in tool '{name}': {type(e).__name__}: {sanitize_for_logging(e)}")
            return _error_response("internal_error", f"Tool '{name}' failed unexpectedly")

        _log_event(f"Tool result: {name}", length=sum(len(c.text) for c in result))
        return result

    async def handle_query(self, arguments: dict) -> list[TextContent]:
        """Query Claude, carrying conversation history when sessions are enabled."""
        limits = self.config.limits
        prompt = validate_prompt(arguments.get("prompt"), limits)
        session_id = _optional_str(arguments, "sessionId")
        parts = arguments.get("parts") or []
        if parts:
            validate_multimodal_parts(parts, limits)
        # Text parts are folded into the prompt, so the bound applies to the whole
        full_prompt = compose_prompt(prompt, parts)
        if parts:
            validate_text(full_prompt, "Prompt with parts", limits.max_prompt_length)

        _log_event(
            "Handling query",
            promptLength=len(prompt),
            sessionId=session_id or "none",
            partsCount=len(parts),
        )

        history: list[Message] = []
        effective_session_id = None
        if self.conversations is not None:
            session = self.conversations.get(session_id) if session_id else None
            if session is not None:
                history = list(session.messages)
                effective_session_id = session.id
            else:
                if session_id:
                    logger.info(f"Session {_preview(session_id)} not found, creating new session")
                effective_session_id = self.conversations.create()

        response = await self.claude.query(full_prompt, history)

        # Both halves of the turn are recorded together, only on success
        if self.conversations is not None and effective_session_id:
            self.conversations.append(effective_session_id, Message(role="user", content=prompt))
            self.conversations.append(effective_session_id, Message(role="assistant", content=response.content))

        _log_event("Query completed successfully", usage=response.usage)
        text = response.content
        if effective_session_id:
            text += f"\n\n---\nSession ID: {effective_session_id}"
        return _text_response(text)

    async def handle_search(self, arguments: dict) -> list[TextContent]:
        """Ask Claude about a topic and cache result stubs for fetch."""
        query = validate_query(arguments.get("query"), self.config.limits)
        _log_event("Handling search request", query=query)

        response = await self.claude.query(SEARCH_PROMPT.format(query=query))

        now = self.cache.now()
        results = parse_search_results(response.content, query, now)
        self.cache.put_many(
            make_document(r["id"], r["title"], response.content, r["url"], created_at=now, query=query)
            for r in results
        )

        _log_event("Search completed", resultCount=len(results))
        return _text_response({"results": results})

    async def handle_fetch(self, arguments: dict) -> list[TextContent]:
        """Return a cached search document; a miss is a normal result."""
        doc_id = validate_text(arguments.get("id"), "Document id", 200)
        _log_event("Handling fetch request", id=doc_id)

        document = self.cache.get(doc_id)
        if document is None:
            logger.info(f"Document not found in cache: {doc_id}")
            return _text_response({
                "error": f"Document with id '{doc_id}' not found. Please perform a search first."
            })
        return _text_response(document.to_fetch_result())

    async def handle_web_fetch(self, arguments: dict) -> list[TextContent]:
        url = _require_str(arguments, "url")
        extract = arguments.get("extract", True)
        if not isinstance(extract, bool):
            raise ValidationError("'extract' must be a boolean", code="invalid_arguments")
        _log_event("Fetching URL", url=url, extract=extract)
        return _text_response(await self.web_fetcher.fetch(url, extract=extract))

    async def handle_read_file(self, arguments: dict) -> list[TextContent]:
        raw_path = _require_str(arguments, "path")
        validated = assert_path_allowed(raw_path, self.config.allowed_directories)
        _log_event("Reading file", filePath=str(validated))

        if not check_file_readable(validated):
            raise ToolExecutionError(f"File not found: {raw_path}", "read_file", code="file_not_found")

        try:
            size = validated.stat().st_size
            if size > MAX_FILE_SIZE:
                raise ToolExecutionError(
                    f"File too large: {size} bytes (max: {MAX_FILE_SIZE} bytes)", "read_file", code="file_too_large"
                )
            content = await _run_blocking(validated.read_text, encoding="utf-8")
        except asyncio.TimeoutError:
            raise ToolExecutionError(
                f"File read timed out after {FILE_OPERATION_TIMEOUT} seconds", "read_file", code="file_timeout"
            )
        except UnicodeDecodeError:
            raise ToolExecutionError(f"File is not valid UTF-8 text: {raw_path}", "read_file", code="file_not_text")
        except OSError as e:
            logger.error(f"File read failed for {validated}: {e}")
            raise ToolExecutionError(f"Failed to read file: {raw_path}", "read_file", code="file_read_failed")

        _log_event("File read successfully", filePath=str(validated), size=size)
        return _text_response(content)

    async def handle_write_file(self, arguments: dict) -> list[TextContent]:
        if not self.config.enable_file_write:
            raise SecurityError(
                "File writing is disabled. Set CLAUDE_ENABLE_FILE_WRITE=true to enable.",
                code="capability_disabled",
            )

        raw_path = _require_str(arguments, "path")
        content = _require_str(arguments, "content")
        size = len(content.encode("utf-8"))
        if size > MAX_WRITE_SIZE:
            raise ValidationError(
                f"Content too large: {size} bytes (max: {MAX_WRITE_SIZE} bytes)", code="content_too_large"
            )

        validated = assert_path_allowed(raw_path, self.config.allowed_directories)
        _log_event("Writing file", filePath=str(validated), contentLength=size)
        if validated.is_dir():
            raise ToolExecutionError(f"Path is a directory: {raw_path}", "write_file", code="path_is_directory")

        try:
            await _run_blocking(validated.parent.mkdir, parents=True, exist_ok=True)
            if not check_file_writable(validated):
                raise ToolExecutionError(f"File is not writable: {raw_path}", "write_file", code="file_not_writable")
            await _run_blocking(validated.write_text, content, encoding="utf-8")
        except asyncio.TimeoutError:
            raise ToolExecutionError(
                f"File write timed out after {FILE_OPERATION_TIMEOUT} seconds", "write_file", code="file_timeout"
            )
        except OSError as e:
            logger.error(f"File write failed for {validated}: {e}")
            raise ToolExecutionError(f"Failed to write file: {raw_path}", "write_file", code="file_write_failed")

        _log_event("File written successfully", filePath=str(validated), size=size)
        return _text_response(f"File written successfully: {raw_path} ({size} bytes)")

    async def handle_execute_command(self, arguments: dict) -> list[TextContent]:
        if not self.config.enable_command_execution:
            raise SecurityError(
                "Command execution is disabled. Set CLAUDE_ENABLE_COMMAND_EXECUTION=true to enable.",
                code="capability_disabled",
            )

        command = validate_text(arguments.get("command"), "Command", MAX_COMMAND_LENGTH)
        working_dir = _optional_str(arguments, "workingDirectory")
        cwd = assert_directory_allowed(working_dir or os.getcwd(), self.config.allowed_directories)
        if not cwd.is_dir():
            raise ToolExecutionError(
                f"Working directory does not exist: {working_dir}", "execute_command", code="invalid_working_directory"
            )

        _log_event("Executing command", command=command[:100], workingDirectory=str(cwd))

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_command_env(),
            start_new_session=True,
        )
        try:
            stdout_bytes, stderr_bytes, truncated = await asyncio.wait_for(
                _collect_output(process, MAX_OUTPUT_SIZE), timeout=COMMAND_TIMEOUT
            )
        except asyncio.TimeoutError:
            _kill_process_tree(process)
            await process.wait()
            raise ToolExecutionError(
                f"Command execution timed out ({COMMAND_TIMEOUT} seconds)", "execute_command", code="command_timeout"
            )

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        # A stopped process has a signal exit code; that is not a command failure
        if process.returncode != 0 and not truncated:
            logger.error(f"Command exited with code {process.returncode}")
            raise ToolExecutionError(
                f"Command failed with exit code {process.returncode}\n{stderr[:MAX_STDERR_EXCERPT]}",
                "execute_command",
                code="command_failed",
            )

        output = stdout or stderr or "(no output)"
        _log_event("Command executed successfully", outputLength=len(output), truncated=truncated)
        if truncated:
            output = output[:MAX_OUTPUT_SIZE] + f"\n... (output truncated; command stopped after {MAX_OUTPUT_SIZE} bytes)"
        return _text_response(output)


def build_handlers(config: GatewayConfig) -> ToolHandlers:
    conversations = (
        ConversationStore(session_timeout=config.session_timeout, max_history=config.max_history)
        if config.enable_conversations
        else None
    )
    return ToolHandlers(config, ClaudeService(config), conversations=conversations)


def create_server(handlers: ToolHandlers) -> Server:
    """Bind the tool handlers to an MCP server instance."""
    server = Server("claude-agent-mcp-server", version=__version__)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return handlers.tool_definitions()

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Route tool calls to their handlers."""
        return await handlers.call_tool(name, arguments)

    return server


async def main(config: GatewayConfig) -> None:
    """Run the MCP server over stdio until the client disconnects."""
    handlers = build_handlers(config)
    server = create_server(handlers)
    _log_event(
        "Starting Claude Agent MCP Server",
        provider=config.provider,
        model=config.model,
        conversationsEnabled=config.enable_conversations,
        fileWriteEnabled=config.enable_file_write,
        commandExecutionEnabled=config.enable_command_execution,
    )

    if handlers.conversations is not None:
        handlers.conversations.start()
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        if handlers.conversations is not None:
            await handlers.conversations.dispose()
        logger.info("Server stopped")


def run():
    """Sync entry point for console script."""
    load_dotenv()
    try:
        config = load_config()
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    configure_logging(config)
    asyncio.run(main(config))


if __name__ == "__main__":
    run()
