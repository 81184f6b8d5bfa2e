"""Input size limits and log redaction.

These limits prevent accidental resource exhaustion in local deployments.
They are generous enough for normal use (whole documents as prompts) while
stopping obviously broken input before any backend call is made.
"""

import re
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError

# Redaction
MASK = "***"
MAX_LOGGED_STRING = 200
LOG_HEAD_CHARS = 100
LOG_TAIL_CHARS = 50
SENSITIVE_KEY_PARTS = ("key", "token", "secret", "password")

_API_KEY_PATTERN = re.compile(r"sk-ant-api\d+-[\w-]+", re.IGNORECASE)
_BEARER_PATTERN = re.compile(r"Bearer\s+[\w\-.~+/]+=*", re.IGNORECASE)


@dataclass(frozen=True)
class SecurityLimits:
    """Process-wide limits, read-only after startup."""

    max_prompt_length: int = 500_000  # large documents
    max_query_length: int = 50_000
    max_multimodal_parts: int = 20
    max_base64_size: int = 20 * 1024 * 1024  # decoded bytes
    max_cache_size: int = 100
    cache_ttl_seconds: float = 3600.0
    cache_eviction_buffer: int = 10


DEFAULT_LIMITS = SecurityLimits()


def validate_text(value: Any, field_name: str, max_length: int) -> str:
    """Reject empty/whitespace-only text and text longer than ``max_length``.

    The bound is inclusive: exactly ``max_length`` characters is accepted.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} cannot be empty", code="empty_input")

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} too long: {len(value)} characters (max: {max_length})",
            code="input_too_long",
        )
    return value


def validate_prompt(prompt: Any, limits: SecurityLimits = DEFAULT_LIMITS) -> str:
    return validate_text(prompt, "Prompt", limits.max_prompt_length)


def validate_query(query: Any, limits: SecurityLimits = DEFAULT_LIMITS) -> str:
    return validate_text(query, "Query", limits.max_query_length)


def estimate_decoded_size(data: str) -> int:
    """Decoded byte size of a base64 string, without decoding it."""
    stripped = data.strip()
    padding = len(stripped) - len(stripped.rstrip("="))
    return max(0, len(stripped) * 3 // 4 - padding)


def validate_multimodal_parts(parts: Any, limits: SecurityLimits = DEFAULT_LIMITS) -> list:
    """Check part count and the decoded size of every inline binary payload.

    All parts are inspected; the error lists every oversized part rather
    than only the first one.
    """
    if not isinstance(parts, list):
        raise ValidationError("parts must be a list", code="invalid_arguments")

    if len(parts) > limits.max_multimodal_parts:
        raise ValidationError(
            f"Too many multimodal parts: {len(parts)} (max: {limits.max_multimodal_parts})",
            code="too_many_parts",
        )

    oversized = []
    for index, part in enumerate(parts):
        if not isinstance(part, dict):
            raise ValidationError(f"Part {index} must be an object", code="invalid_arguments")
        if "text" in part and not isinstance(part["text"], str):
            raise ValidationError(f"Part {index} text must be a string", code="invalid_arguments")
        inline = part.get("inlineData")
        if not inline:
            continue
        data = inline.get("data") if isinstance(inline, dict) else None
        if not isinstance(data, str):
            raise ValidationError(f"Part {index} inlineData.data must be a string", code="invalid_arguments")
        size = estimate_decoded_size(data)
        if size > limits.max_base64_size:
            oversized.append((index, size))

    if oversized:
        max_mb = limits.max_base64_size / 1024 / 1024
        details = ", ".join(f"part {i}: {size / 1024 / 1024:.2f}MB" for i, size in oversized)
        raise ValidationError(
            f"Inline data too large ({details}; max: {max_mb:.0f}MB)",
            code="inline_data_too_large",
        )
    return parts


def _is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def _mask(value: str) -> str:
    masked = _API_KEY_PATTERN.sub("sk-ant-***", value)
    return _BEARER_PATTERN.sub("Bearer ***", masked)


def _sanitize_string(value: str) -> str:
    sanitized = _mask(value)

    # Long strings are usually base64 or pasted documents
    if len(sanitized) > MAX_LOGGED_STRING:
        summary = (
            f"{sanitized[:LOG_HEAD_CHARS]}...[{len(sanitized)} chars total]..."
            f"{sanitized[-LOG_TAIL_CHARS:]}"
        )
        # The marker's dots are token characters, so the cut edges are masked again
        sanitized = _mask(summary)
    return sanitized


def sanitize_for_logging(value: Any) -> Any:
    """Return a redacted copy of ``value`` suitable for a durable log.

    Only ever used on the logging path; data sent to the model or returned
    to the caller is never passed through here. Idempotent.
    """
    if isinstance(value, str):
        return _sanitize_string(value)

    if isinstance(value, BaseException):
        return _sanitize_string(str(value) or type(value).__name__)

    if isinstance(value, dict):
        sanitized = {}
        for key, item in value.items():
            if _is_sensitive_key(key):
                sanitized[key] = MASK
            elif str(key).lower() == "data" and isinstance(item, str) and len(item) > MAX_LOGGED_STRING:
                sanitized[key] = f"[{len(item)} chars]"
            else:
                sanitized[key] = sanitize_for_logging(item)
        return sanitized

    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_for_logging(item) for item in value)

    return value
