import codecs
import json
import logging
from typing import Any, Dict, List, Optional, Union

from langchain_core.messages import BaseMessage
from langchain_core.load import dumpd
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class LangChainObjectEncoder(json.JSONEncoder):
    """
    JSON encoder that understands LangChain messages and pydantic models,
    so step traces and conversation turns serialize predictably.
    """
    def default(self, obj):
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json", by_alias=True)
        if isinstance(obj, BaseMessage):
            return dumpd(obj)

        try:
            return super().default(obj)
        except TypeError:
            logger.warning(f"Cannot serialize object of type {type(obj)}. Returning string representation.")
            return str(obj)


def safe_serialize(data: object) -> str:
    """
    Serializes data to a JSON string using the LangChainObjectEncoder.
    Never raises: a payload that cannot be encoded becomes an error description.
    """
    try:
        return json.dumps(data, cls=LangChainObjectEncoder)
    except (TypeError, ValueError) as e:
        logger.exception("Could not serialize data")
        return json.dumps({
            "error": "Data serialization failed",
            "exception_type": type(e).__name__,
            "exception_message": str(e)
        })


def encode_ndjson_line(event: Union[BaseModel, Dict[str, Any]]) -> str:
    """One newline-terminated JSON object, camelCase keys for models."""
    if isinstance(event, BaseModel):
        return event.model_dump_json(by_alias=True) + "\n"
    return safe_serialize(event) + "\n"


class LineBuffer:
    """
    Splits an incremental text stream into complete lines.

    A trailing partial line is held back until more data (or flush()) arrives.
    """

    def __init__(self):
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")()

    def feed(self, chunk: Union[str, bytes]) -> List[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        # Bytes of an unfinished character left at end of stream are an error
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer.rstrip("\r"), ""
        return [remainder] if remainder else []

    @property
    def pending(self) -> str:
        return self._buffer


class NDJSONStreamDecoder:
    """
    Consumer-side parser for the chat stream: feed raw chunks, get back the
    JSON objects for every complete line. Blank lines are skipped.
    """

    def __init__(self):
        self._lines = LineBuffer()

    def feed(self, chunk: Union[str, bytes]) -> List[Dict[str, Any]]:
        return [json.loads(line) for line in self._lines.feed(chunk) if line.strip()]

    def close(self) -> List[Dict[str, Any]]:
        """Parses whatever is left in the buffer once the stream has ended."""
        return [json.loads(line) for line in self._lines.flush() if line.strip()]

    @property
    def pending(self) -> Optional[str]:
        return self._lines.pending or None
