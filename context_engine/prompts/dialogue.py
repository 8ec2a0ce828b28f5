from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

from ..context.assembler import AssembledContext
from ..memory.models import Message
from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "default_system_prompt": (
        "You are a helpful conversational companion. Keep continuity with what was said earlier "
        "and answer in the user's language."
    ),
    "recalled_block_header": (
        "Recalled context from earlier in this conversation. These are older messages; "
        "newer messages win when they disagree:"
    ),
    "recalled_line_template": "- [{timestamp}] {role}: {content}",
    "session_summary_template": "Conversation summary so far: {summary}",
    "summary_request": (
        "Summarize the conversation above in 2-3 sentences. Keep names, decisions and open questions. "
        "Reply with the summary only."
    ),
    "timestamp_format": "%Y-%m-%d %H:%M UTC",
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("dialogue.json", _DEFAULTS)


def _text(key: str) -> str:
    return str(_cfg().get(key, _DEFAULTS[key]))


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_text("timestamp_format"))


def build_recalled_block(context: AssembledContext) -> str:
    if not context.recalled:
        return ""
    template = _text("recalled_line_template")
    lines = [_text("recalled_block_header")]
    for item in context.recalled:
        lines.append(
            template.format(
                timestamp=format_timestamp(item.message.created_at),
                role=item.message.role,
                content=item.message.content,
                similarity=item.similarity,
            )
        )
    return "\n".join(lines)


def build_context_messages(
    context: AssembledContext,
    *,
    system_prompt: str = "",
    summary: str = "",
) -> List[Dict[str, str]]:
    """Render an assembled context as chat messages, preserving its order."""
    messages: List[Dict[str, str]] = []
    system_lines = [system_prompt.strip() or _text("default_system_prompt")]
    if summary.strip():
        system_lines.append(_text("session_summary_template").format(summary=summary.strip()))
    messages.append({"role": "system", "content": "\n\n".join(system_lines)})

    recalled_block = build_recalled_block(context)
    if recalled_block:
        messages.append({"role": "system", "content": recalled_block})

    for message in context.recent:
        messages.append({"role": message.role, "content": message.content})
    messages.append({"role": "user", "content": context.turn.content})
    return messages


def build_summary_messages(history: Sequence[Message], *, previous_summary: str = "") -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = []
    if previous_summary.strip():
        messages.append(
            {
                "role": "system",
                "content": _text("session_summary_template").format(summary=previous_summary.strip()),
            }
        )
    for message in history:
        messages.append({"role": message.role, "content": message.content})
    messages.append({"role": "user", "content": _text("summary_request")})
    return messages
