"""Token-capped context block built from web search results."""

from __future__ import annotations

from dataclasses import dataclass, field

from grounded_chat.context.budget import ContextBudgeter
from grounded_chat.models.domain import WebResult


@dataclass
class WebContext:
    text: str = ""
    tokens: int = 0
    trimmed: bool = False
    used: list[WebResult] = field(default_factory=list)

    def to_event(self) -> dict:
        return {
            "tokens": self.tokens,
            "trimmed": self.trimmed,
            "results": [{"id": r.id, "title": r.title, "url": r.url, "rank": r.rank} for r in self.used],
        }


def format_web_block(label: str, result: WebResult) -> str:
    lines = [result.snippet]
    if result.body and result.body != result.snippet:
        lines.append(result.body)
    lines.append(result.url)
    body = "\n".join(line for line in lines if line)
    return f"[{label}] {result.title}\n{body}"


def build_web_context(
    results: list[WebResult],
    budgeter: ContextBudgeter,
    max_tokens: int,
    first_number: int | None = None,
) -> WebContext:
    """Add ranked result blocks until the token cap is hit.

    The first block is always included, even when it alone exceeds the cap.
    Blocks are labelled "Web i", or with citation numbers counting up from
    ``first_number`` when given.
    """
    if not results or max_tokens <= 0:
        return WebContext()

    ordered = sorted(results, key=lambda r: r.rank or 0)
    context = WebContext()
    blocks: list[str] = []
    for position, result in enumerate(ordered, 1):
        label = f"Web {position}" if first_number is None else str(first_number + position - 1)
        block = format_web_block(label, result)
        block_tokens = budgeter.estimate_tokens(block)
        if context.tokens + block_tokens > max_tokens:
            context.trimmed = True
            if context.used:
                break
        blocks.append(block)
        context.tokens += block_tokens
        context.used.append(result)
        if context.tokens >= max_tokens:
            context.trimmed = True
            break

    context.text = "\n\n".join(blocks)
    return context
