import logging
import math
from typing import Sequence

from langchain_core.messages import BaseMessage

from ..models.model_registry import get_context_length

logger = logging.getLogger(__name__)

# Rough estimate: 1 token ~= 4 characters in English text.
# Changing this changes when conversation summaries are triggered.
TOKEN_CHAR_RATIO = 4

def estimate_tokens(text: str) -> int:
    """Approximate token count of a string (characters / 4, rounded up)."""
    if not text:
        return 0
    return math.ceil(len(text) / TOKEN_CHAR_RATIO)

def estimate_message_tokens(messages: Sequence[BaseMessage]) -> int:
    """Token estimate for a list of messages: total characters / 4, rounded up."""
    total_chars = sum(len(str(message.content)) for message in messages)
    return math.ceil(total_chars / TOKEN_CHAR_RATIO)

def compress_text_to_fit_context(
    text: str,
    model_name: str,
    prompt_buffer: int = 1000
) -> str:
    """
    Truncates source text for the synthesis prompt to what the model window allows.

    Args:
        text: Formatted knowledge base and web sources.
        model_name: Completion model id, looked up in the registry for its window.
        prompt_buffer: Tokens kept free for the instructions around the sources.

    Returns:
        text unchanged when it fits, otherwise its leading characters.
    """
    model_context_limit = get_context_length(model_name)
    max_allowed_tokens = max(model_context_limit - prompt_buffer, 0)
    estimated_text_tokens = estimate_tokens(text)

    if estimated_text_tokens > max_allowed_tokens:
        logger.warning(
            f"Estimated text tokens ({estimated_text_tokens}) exceed allowed limit "
            f"({max_allowed_tokens}) for model {model_name}. Truncating."
        )
        return text[:max_allowed_tokens * TOKEN_CHAR_RATIO]
    return text
