"""Request sanitization and session id derivation."""

from __future__ import annotations

import hashlib
import re
from uuid import uuid4

from fastapi import HTTPException, status

from grounded_chat.config.settings import Settings
from grounded_chat.models.domain import AgentMessage
from grounded_chat.models.schemas import ChatMessage

SCRIPT_PATTERN = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")


def clean_content(content: str) -> str:
    text = SCRIPT_PATTERN.sub("", content)
    text = TAG_PATTERN.sub("", text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def sanitize_messages(messages: list[ChatMessage], settings: Settings) -> list[AgentMessage]:
    """Validate limits and strip markup; raises HTTP 400 on invalid input."""
    if not messages:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Messages array required.")
    if len(messages) > settings.max_messages:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Too many messages. Maximum {settings.max_messages}.",
        )

    sanitized: list[AgentMessage] = []
    for message in messages:
        if len(message.content) > settings.max_message_chars:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Message too long. Maximum {settings.max_message_chars} characters.",
            )
        content = clean_content(message.content)
        if content:
            sanitized.append(AgentMessage(role=message.role, content=content))

    if not sanitized:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid messages provided.")
    return sanitized


def derive_session_id(
    messages: list[AgentMessage],
    explicit: str | None = None,
    fingerprint: str | None = None,
) -> str:
    """Stable id for a conversation: explicit id, else a hash of its opening, else random."""
    if explicit and explicit.strip():
        return explicit.strip()

    opening = [f"{m.role}:{m.content}" for m in messages if m.role != "system"][:2]
    if opening:
        seed = "|".join(opening)
        if fingerprint:
            seed = f"{seed}|{fingerprint}"
        return hashlib.sha1(seed.encode("utf-8")).hexdigest()
    return str(uuid4())
