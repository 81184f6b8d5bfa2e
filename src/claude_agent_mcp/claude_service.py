"""Backend model invocation through the Claude Agent SDK.

Provider routing (Anthropic API, Bedrock, Vertex) is handled by the SDK
itself from environment variables.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from claude_agent_sdk import AssistantMessage, ClaudeAgentOptions, ResultMessage, TextBlock
from claude_agent_sdk import query as claude_query

from .config import GatewayConfig
from .conversations import Message
from .errors import UpstreamError
from .limits import sanitize_for_logging

logger = logging.getLogger("claude-agent-mcp.claude_service")


@dataclass
class ClaudeResponse:
    content: str
    usage: Optional[dict] = None


def build_full_prompt(prompt: str, history: list[Message]) -> str:
    """Fold prior turns into a single prompt."""
    if not history:
        return prompt

    lines = ["Previous conversation:"]
    for msg in history:
        speaker = "User" if msg.role == "user" else "Assistant"
        lines.append(f"{speaker}: {msg.content}")
    lines.append(f"\nCurrent query: {prompt}")
    return "\n".join(lines)


class ClaudeService:
    """Thin async wrapper around ``claude_agent_sdk.query``."""

    def __init__(self, config: GatewayConfig):
        self._config = config
        logger.info(f"Initialized Claude Agent SDK service (provider={config.provider}, model={config.model})")

    def _options(self, max_turns: int) -> ClaudeAgentOptions:
        mcp_servers = {server.name: server.to_sdk() for server in self._config.mcp_servers}
        return ClaudeAgentOptions(
            model=self._config.model,
            system_prompt=self._config.system_prompt,
            max_turns=max_turns,
            mcp_servers=mcp_servers,
        )

    async def _collect(self, prompt: str, options: ClaudeAgentOptions) -> ClaudeResponse:
        texts = []
        usage = None
        async for message in claude_query(prompt=prompt, options=options):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        texts.append(block.text)
            elif isinstance(message, ResultMessage) and message.usage:
                usage = {
                    "input_tokens": message.usage.get("input_tokens", 0),
                    "output_tokens": message.usage.get("output_tokens", 0),
                }
        return ClaudeResponse(content="".join(texts), usage=usage)

    async def query(
        self,
        prompt: str,
        history: Optional[list[Message]] = None,
        max_turns: Optional[int] = None,
    ) -> ClaudeResponse:
        """Send ``prompt`` (with prior turns folded in) and return the assembled text."""
        history = history or []
        turns = max_turns if max_turns is not None else self._config.max_turns
        logger.info(
            f"Sending query to Claude (model={self._config.model}, "
            f"history={len(history)}, max_turns={turns})"
        )

        full_prompt = build_full_prompt(prompt, history)
        try:
            response = await asyncio.wait_for(
                self._collect(full_prompt, self._options(turns)),
                timeout=self._config.query_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Claude query timed out after {self._config.query_timeout}s")
            raise UpstreamError(
                f"Backend request timed out after {self._config.query_timeout} seconds",
                code="upstream_timeout",
            )
        except Exception as e:
            logger.error(f"Error querying Claude Agent SDK: {type(e).__name__}: {sanitize_for_logging(e)}")
            raise UpstreamError(f"Backend request failed ({type(e).__name__})")

        logger.info(f"Received response from Claude (length={len(response.content)}, usage={response.usage})")
        return response
