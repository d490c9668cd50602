"""
Exception types shared across the chat engine.

Retrieval errors (knowledge base, web search) are caught at the pipeline stage
boundary and turned into step content. Everything else propagates to the caller.
"""
from typing import Optional


class CompletionError(Exception):
    """Raised when the completion provider returns a non-2xx status or cannot be reached."""

    def __init__(self, status_code: Optional[int], body: str, retried: bool = False):
        self.status_code = status_code
        self.body = body
        self.retried = retried
        prefix = "Completion API error after retry" if retried else "Completion API error"
        status = status_code if status_code is not None else "no response"
        super().__init__(f"{prefix} ({status}): {body}")


class WebSearchError(Exception):
    """Raised when the web search provider fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class KnowledgeBaseError(Exception):
    """Base class for knowledge base failures."""


class DocumentValidationError(KnowledgeBaseError):
    """Upload rejected before any side effect (bad type, too large, empty)."""


class DocumentNotFoundError(KnowledgeBaseError):
    pass


class DocumentDeletionError(KnowledgeBaseError):
    """Deletion stopped part way; the document is left inactive and marked as errored."""


class ChatNotFoundError(Exception):
    pass


class ConversationAccessError(Exception):
    """The caller is not a participant in the target conversation."""


class StoreError(Exception):
    """Raised by store adapters when a read or write cannot be completed."""
