"""Tests for JWT auth, rate limiting and request sanitization."""

from __future__ import annotations

import hashlib
import time

import jwt
import pytest
from fastapi import HTTPException

from grounded_chat.api.auth import issue_token, valid_api_keys
from grounded_chat.api.rate_limiter import SlidingWindowRateLimiter
from grounded_chat.api.sanitize import clean_content, derive_session_id, sanitize_messages
from grounded_chat.models.domain import AgentMessage
from grounded_chat.models.schemas import ChatMessage


def test_issue_token_round_trip(settings):
    token = issue_token("key-1", settings)
    decoded = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    assert decoded["sub"] == "key-1"
    assert decoded["exp"] - decoded["iat"] == settings.jwt_expiry_minutes * 60


def test_issued_token_expires(settings):
    token = issue_token("key-1", settings, now=int(time.time()) - settings.jwt_expiry_minutes * 60 - 10)
    with pytest.raises(jwt.ExpiredSignatureError):
        jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def test_jwt_invalid_secret(settings):
    token = issue_token("key-1", settings)
    with pytest.raises(jwt.InvalidSignatureError):
        jwt.decode(token, "wrong-secret", algorithms=[settings.jwt_algorithm])


def test_valid_api_keys_parsing(settings):
    settings.api_keys = " a, b ,,c "
    assert valid_api_keys(settings) == ["a", "b", "c"]


def test_rate_limiter_allows():
    limiter = SlidingWindowRateLimiter()
    for _ in range(5):
        assert limiter.check("user1", max_requests=5) is True
    assert limiter.check("user1", max_requests=5) is False


def test_rate_limiter_separate_keys():
    limiter = SlidingWindowRateLimiter()
    for _ in range(5):
        limiter.check("user1", max_requests=5)
    # user1 is exhausted
    assert limiter.check("user1", max_requests=5) is False
    # user2 is fresh
    assert limiter.check("user2", max_requests=5) is True


def test_rate_limiter_window_slides():
    now = [100.0]
    limiter = SlidingWindowRateLimiter(clock=lambda: now[0])
    assert limiter.check("ip", max_requests=2) is True
    now[0] = 130.0
    assert limiter.check("ip", max_requests=2) is True
    assert limiter.check("ip", max_requests=2) is False
    assert limiter.retry_after("ip") == 31
    now[0] = 161.0
    assert limiter.check("ip", max_requests=2) is True
    assert limiter.retry_after("unknown") == 0


def test_clean_content_strips_markup():
    assert clean_content("<script>alert(1)</script>Hello <b>world</b>\n\n  again") == "Hello world again"


def test_sanitize_messages_limits(settings):
    with pytest.raises(HTTPException) as exc:
        sanitize_messages([], settings)
    assert exc.value.detail == "Messages array required."

    settings.max_messages = 1
    with pytest.raises(HTTPException):
        sanitize_messages([ChatMessage(role="user", content="a"), ChatMessage(role="user", content="b")], settings)

    settings.max_messages = 50
    settings.max_message_chars = 5
    with pytest.raises(HTTPException) as exc:
        sanitize_messages([ChatMessage(role="user", content="too long")], settings)
    assert exc.value.status_code == 400


def test_sanitize_drops_empty_after_cleaning(settings):
    messages = [ChatMessage(role="user", content="<i></i>"), ChatMessage(role="user", content=" Hi <b>there</b> ")]
    assert sanitize_messages(messages, settings) == [AgentMessage(role="user", content="Hi there")]
    with pytest.raises(HTTPException) as exc:
        sanitize_messages([ChatMessage(role="user", content="<br/>")], settings)
    assert exc.value.detail == "No valid messages provided."


def test_derive_session_id():
    messages = [
        AgentMessage(role="system", content="sys"),
        AgentMessage(role="user", content="hi"),
        AgentMessage(role="assistant", content="hello"),
        AgentMessage(role="user", content="later"),
    ]
    expected = hashlib.sha1(b"user:hi|assistant:hello").hexdigest()
    assert derive_session_id(messages) == expected
    assert derive_session_id(messages, fingerprint="fp") == hashlib.sha1(b"user:hi|assistant:hello|fp").hexdigest()
    assert derive_session_id(messages, explicit="  s-1 ") == "s-1"
    assert len(derive_session_id([AgentMessage(role="system", content="x")])) == 36
