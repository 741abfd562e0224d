"""Model client implementations."""
from .openai_compat import OpenAICompatibleClient, parse_chunk, parse_sse_line

__all__ = [
    "OpenAICompatibleClient",
    "parse_chunk",
    "parse_sse_line",
]
