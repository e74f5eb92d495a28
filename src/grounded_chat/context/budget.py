"""Token-capped context sections: drop the oldest lines until each section fits."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Protocol

import tiktoken

from grounded_chat.config.constants import FALLBACK_ENCODING
from grounded_chat.observability.logger import get_logger

logger = get_logger("context_budget")


class Encoder(Protocol):
    def encode(self, text: str) -> list[int]: ...


def _load_tiktoken_encoder(model: str) -> Encoder:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.debug("encoder_fallback", model=model, encoding=FALLBACK_ENCODING)
        return tiktoken.get_encoding(FALLBACK_ENCODING)


class EncoderCache:
    """Process-scoped cache of tokenizers keyed by model name.

    One instance is created at startup and passed to every component that
    counts tokens. Concurrent first access for the same model loads once.
    """

    def __init__(self, loader: Callable[[str], Encoder] = _load_tiktoken_encoder) -> None:
        self._loader = loader
        self._encoders: dict[str, Encoder] = {}
        self._lock = threading.Lock()

    def get(self, model: str) -> Encoder:
        encoder = self._encoders.get(model)
        if encoder is not None:
            return encoder
        with self._lock:
            encoder = self._encoders.get(model)
            if encoder is None:
                encoder = self._loader(model)
                self._encoders[model] = encoder
            return encoder

    def count(self, model: str, text: str) -> int:
        if not text:
            return 0
        return len(self.get(model).encode(text))

    def __len__(self) -> int:
        return len(self._encoders)


class ContextBudgeter:
    def __init__(self, encoders: EncoderCache, model: str) -> None:
        self._encoders = encoders
        self._model = model

    def estimate_tokens(self, text: str) -> int:
        return self._encoders.count(self._model, text)

    def trim(self, text: str, cap: int) -> str:
        """Drop leading lines until the remainder fits ``cap`` tokens.

        A cap of 0 (or less) passes text through unchanged. When even the
        last line alone exceeds the cap, that line is kept.
        """
        if cap <= 0 or not text:
            return text
        if self.estimate_tokens(text) <= cap:
            return text

        lines = text.split("\n")
        while len(lines) > 1:
            lines = lines[1:]
            candidate = "\n".join(lines)
            if self.estimate_tokens(candidate) <= cap:
                return candidate
        return lines[0]

    def budget_sections(
        self, sections: dict[str, str], caps: dict[str, int]
    ) -> dict[str, str]:
        budgeted = {name: self.trim(text, caps.get(name, 0)) for name, text in sections.items()}
        for name, text in budgeted.items():
            if text != sections[name]:
                logger.info(
                    "section_trimmed",
                    section=name,
                    before=self.estimate_tokens(sections[name]),
                    after=self.estimate_tokens(text),
                    cap=caps.get(name, 0),
                )
        return budgeted
