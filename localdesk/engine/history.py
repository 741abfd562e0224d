"""Replays a stored transcript into chat-completion messages.

Tool traffic from earlier turns is not replayed as real tool calls.
Each tool_use/tool_result pair is compressed into one short line
appended to the assistant text of its turn, which keeps replayed
context small and avoids dangling tool-call ids across runs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import (
    TextEntry,
    ToolResultEntry,
    ToolUseEntry,
    TranscriptEntry,
    UserPromptEntry,
)
from .prompts import (
    COMPRESSED_HISTORY_NOTE,
    compress_tool_line,
    format_user_prompt,
)

logger = logging.getLogger(__name__)


@dataclass
class ReplayedHistory:
    """Messages ready for the first model call of a run.

    ``memory_index`` points at the user message that carries memory
    (the most recent prompt); ``memory_request`` is its unformatted
    request text, used to regenerate it when memory changes.
    """
    messages: list[dict[str, Any]] = field(default_factory=list)
    last_prompt: str | None = None
    prompt_appended: bool = False
    memory_index: int | None = None
    memory_request: str | None = None

    def refresh_memory(self, memory: str | None, now: datetime | None = None) -> bool:
        """Rewrite the memory-bearing user message with new memory content."""
        if self.memory_index is None or self.memory_request is None:
            return False
        self.messages[self.memory_index] = {
            "role": "user",
            "content": format_user_prompt(self.memory_request, memory, now),
        }
        return True


class _AssistantBuffer:
    """Collects one assistant turn of text plus compressed tool lines."""

    def __init__(self) -> None:
        self.text = ""
        self._note_added = False
        self._pending_tool: ToolUseEntry | None = None

    def add_text(self, text: str) -> None:
        self.text += text

    def add_tool_use(self, entry: ToolUseEntry) -> None:
        if not self._note_added:
            self.text += COMPRESSED_HISTORY_NOTE
            self._note_added = True
        self._pending_tool = entry

    def add_tool_result(self, entry: ToolResultEntry) -> None:
        # Results without a preceding tool_use are dropped
        tool = self._pending_tool
        if tool is None:
            return
        self.text += compress_tool_line(
            tool.name, tool.input, entry.output, entry.is_error,
        )
        self._pending_tool = None

    def flush(self, messages: list[dict[str, Any]]) -> None:
        if self.text.strip():
            messages.append({"role": "assistant", "content": self.text.strip()})
        self.text = ""
        self._note_added = False
        self._pending_tool = None


def build_history(
    entries: list[TranscriptEntry],
    prompt: str,
    *,
    system_prompt: str,
    memory: str | None = None,
    now: datetime | None = None,
) -> ReplayedHistory:
    """Build the message list for a run from prior transcript + new prompt.

    Every user prompt is formatted with the current date. Only the most
    recent one (the new prompt, or the last replayed one when the new
    prompt is empty or a repeat) gets ``memory``. A prompt identical to
    the last replayed prompt is not appended again.
    """
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    # (message index, raw request) of every user message, in order
    user_slots: list[tuple[int, str]] = []
    assistant = _AssistantBuffer()
    last_prompt: str | None = None

    for entry in entries:
        if isinstance(entry, UserPromptEntry):
            assistant.flush(messages)
            last_prompt = entry.prompt
            user_slots.append((len(messages), entry.prompt))
            messages.append({"role": "user", "content": entry.prompt})
        elif isinstance(entry, TextEntry):
            assistant.add_text(entry.text)
        elif isinstance(entry, ToolUseEntry):
            assistant.add_tool_use(entry)
        elif isinstance(entry, ToolResultEntry):
            assistant.add_tool_result(entry)
        # result entries carry no conversational content
    assistant.flush(messages)

    appended = False
    if prompt and prompt != last_prompt:
        user_slots.append((len(messages), prompt))
        messages.append({"role": "user", "content": prompt})
        appended = True
    elif prompt:
        logger.debug("Prompt matches last replayed prompt; not appending")

    memory_index: int | None = None
    memory_request: str | None = None
    if user_slots:
        memory_index, memory_request = user_slots[-1]
    for index, request in user_slots:
        messages[index]["content"] = format_user_prompt(
            request,
            memory if index == memory_index else None,
            now,
        )

    return ReplayedHistory(
        messages=messages,
        last_prompt=prompt if appended else last_prompt,
        prompt_appended=appended,
        memory_index=memory_index,
        memory_request=memory_request,
    )
