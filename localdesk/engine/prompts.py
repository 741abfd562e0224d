"""Prompt text the runner and coordinator send to the model."""
from __future__ import annotations

import os
import platform
from datetime import datetime, timezone

NO_WORKSPACE = "No workspace folder"

ORIGINAL_REQUEST_MARKER = "ORIGINAL USER REQUEST:\n\n"

COMPRESSED_HISTORY_NOTE = (
    "\n\n---\n"
    "Note: The following shows compressed tool execution history for context. "
    "To perform actions, use actual function calling.\n"
    "---\n\n"
)

LOOP_BREAK_HINT = (
    "⚠️ IMPORTANT: You've been calling the same tool repeatedly "
    "without making progress. Please:\n"
    "1. STOP and think about what you're trying to achieve\n"
    "2. Try a DIFFERENT approach or tool\n"
    "3. If the task is complete, respond to the user\n"
    "4. If stuck, explain what's blocking you\n"
    "\n"
    "DO NOT call the same tool again with similar arguments."
)

DENIED_RESULT = "Error: Tool execution denied by user"
CANCELLED_RESULT = "Error: Tool execution cancelled"
INVALID_ARGUMENTS_RESULT = "Error: Invalid JSON arguments"

COMPRESSED_OUTPUT_CHARS = 80


def _os_name() -> str:
    system = platform.system()
    if system == "Darwin":
        return "macOS"
    return system or "Unix"


def _shell_name() -> str:
    if os.name == "nt":
        return "PowerShell"
    return "bash"


def build_system_prompt(cwd: str | None, todo_summary: str = "") -> str:
    """System message for one run: workspace, platform and shell."""
    workspace = cwd or NO_WORKSPACE
    prompt = (
        "You are a capable desktop assistant that completes tasks by "
        "calling tools.\n\n"
        f"Operating system: {_os_name()}\n"
        f"Shell: {_shell_name()}\n"
        f"Working directory: {workspace}\n\n"
        "Guidelines:\n"
        "- Use tools through function calling; never describe a call in "
        "plain text instead of making it.\n"
        "- Read before you write. Keep file paths relative to the working "
        "directory.\n"
        "- When a tool fails, read the error and adjust instead of "
        "repeating the same call.\n"
        "- When the task is done, answer the user directly without calling "
        "more tools.\n"
    )
    if todo_summary:
        prompt += todo_summary
    return prompt


def _current_date(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%d %H:%M:%S")


def format_user_prompt(
    task: str,
    memory: str | None = None,
    now: datetime | None = None,
) -> str:
    """Wrap a user request with the current date and optional memory.

    The request itself always follows ORIGINAL_REQUEST_MARKER so it can
    be recovered with extract_original_request().
    """
    memory_section = ""
    if memory:
        memory_section = f"MEMORY ABOUT USER:\n\n{memory}\n\n---\n"
    return (
        f"Current date: {_current_date(now)}\n\n"
        f"{memory_section}"
        f"{ORIGINAL_REQUEST_MARKER}{task}"
    )


def extract_original_request(content: str) -> str | None:
    _, marker, request = content.partition(ORIGINAL_REQUEST_MARKER)
    if not marker:
        return None
    return request


def compress_tool_line(
    name: str,
    tool_input: dict,
    output: str,
    is_error: bool,
) -> str:
    """One CSV-ish history line: ``tool,explanation,[ERROR: ]output``."""
    explanation = tool_input.get("explanation") or "No explanation"
    brief = output[:COMPRESSED_OUTPUT_CHARS].replace("\n", " ")
    ellipsis = "..." if len(output) > COMPRESSED_OUTPUT_CHARS else ""
    error = "ERROR: " if is_error else ""
    return f"{name or 'Unknown'},{explanation},{error}{brief}{ellipsis}\n"


def format_error_text(message: str) -> str:
    """Chat-visible framing of a run-fatal error."""
    return (
        f"\n\n❌ **Error:** {message}\n\n"
        "Please check your API settings (Base URL, Model Name, API Key) "
        "and try again."
    )


def format_loop_stopped_text(tool_name: str, episodes: int) -> str:
    return (
        f"[LOOP] Model stuck calling {tool_name} repeatedly. "
        f"Stopped after {episodes} retries."
    )


def build_summary_prompt(
    task_title: str,
    transcripts: list[tuple[str, str]],
) -> str:
    """Prompt for the summary thread.

    ``transcripts`` holds (model, rendered transcript) per member
    thread, in thread order.
    """
    sections = []
    for index, (model, transcript) in enumerate(transcripts, start=1):
        sections.append(
            f"--- Thread {index} ({model or 'unknown'}) ---\n"
            f"{transcript.strip()}\n"
            f"--- End Thread {index} ---\n"
        )
    return (
        f"You are a summarization assistant. Here are {len(transcripts)} "
        "responses from different AI models working on the same task.\n\n"
        f'Task: "{task_title}"\n\n'
        + "\n".join(sections)
        + "\nPlease provide:\n"
        "1. A comprehensive summary of what all threads accomplished\n"
        "2. Key findings or insights from each thread\n"
        "3. Any contradictions or differences between threads\n"
        "4. A final consolidated result or recommendation\n\n"
        "Format your response clearly with sections."
    )


def render_transcript(entries: list) -> str:
    """Plain-text rendering of a thread's transcript for summarizing."""
    lines: list[str] = []
    for entry in entries:
        kind = getattr(entry, "type", "")
        if kind == "user_prompt":
            lines.append(f"User: {entry.prompt}")
        elif kind == "text":
            lines.append(f"Assistant: {entry.text}")
        elif kind == "tool_use":
            explanation = entry.input.get("explanation") or ""
            lines.append(f"[Tool: {entry.name}] {explanation}".rstrip())
        elif kind == "tool_result" and entry.is_error:
            lines.append(f"[Tool error] {entry.output[:COMPRESSED_OUTPUT_CHARS]}")
    return "\n".join(lines)
