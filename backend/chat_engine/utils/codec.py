"""
Content encoding applied to message and chunk text before it reaches the store.

Encryption at rest is provided by the deployment; the engine only needs a
symmetric encode/decode pair. The default codec stores text unchanged.
"""
from typing import Protocol


class ContentCodec(Protocol):
    def encode(self, content: str) -> str:
        ...

    def decode(self, content: str) -> str:
        ...


class PlainTextCodec:
    """Identity codec."""

    def encode(self, content: str) -> str:
        return content

    def decode(self, content: str) -> str:
        return content
