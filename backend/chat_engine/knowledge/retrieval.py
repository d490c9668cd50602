"""
Relevance policies for the knowledge base.

The keyword policy is a substring match over titles and extracted keywords,
newest documents first. An embedding-backed retriever can replace it by
implementing the same protocol.
"""
from typing import List, Protocol

from ..schemas import KnowledgeDocument


class DocumentRetriever(Protocol):
    def rank(self, query: str, documents: List[KnowledgeDocument], limit: int) -> List[KnowledgeDocument]:
        """Returns at most `limit` documents relevant to the query, best first.

        `documents` are the caller's ready, active documents, newest first.
        """
        ...


class KeywordDocumentRetriever:

    def rank(self, query: str, documents: List[KnowledgeDocument], limit: int) -> List[KnowledgeDocument]:
        needle = query.lower()
        matches = [doc for doc in documents if self._matches(needle, doc)]
        return matches[:limit]

    @staticmethod
    def _matches(needle: str, doc: KnowledgeDocument) -> bool:
        if needle in (doc.metadata.title or "").lower():
            return True
        return any(needle in keyword.lower() for keyword in doc.metadata.keywords)
