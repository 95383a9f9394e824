"""
Reassembly of newline-delimited protocol records from raw transport reads.
"""
import codecs
import json
from typing import Any, Dict, List

from ...core.exceptions import UpstreamParseError
from ...core.logging import logger


class ChunkDecoder:
    """
    Turns an unbounded sequence of byte buffers into complete text lines.

    Lines split across buffers, including multi-byte UTF-8 characters split
    across buffers, are carried over until the terminating newline arrives.
    """

    def __init__(self):
        self._utf8_decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._carry = ""

    @property
    def pending(self) -> str:
        """Partial line waiting for its newline."""
        return self._carry

    def feed(self, chunk: bytes) -> List[str]:
        """
        Append a chunk and return every complete line it finishes.

        Args:
            chunk: Bytes as delivered by the transport

        Returns:
            Complete lines without the trailing newline, in arrival order
        """
        self._carry += self._utf8_decoder.decode(chunk, final=False)
        if "\n" not in self._carry:
            return []

        *lines, self._carry = self._carry.split("\n")
        return lines

    def finish(self) -> List[str]:
        """
        End of stream. A trailing partial line is dropped, never parsed: both
        upstream protocols terminate with a full line.
        """
        self._carry += self._utf8_decoder.decode(b"", final=True)
        if self._carry.strip():
            logger.debug("Discarding incomplete trailing record", discarded_chars=len(self._carry))
        self._carry = ""
        return []


def parse_json_record(text: str) -> Dict[str, Any]:
    """
    Decode one JSON object record.

    Raises:
        UpstreamParseError: the record is not a JSON object
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError) as e:
        raise UpstreamParseError(f"Malformed upstream record: {e}", record=text) from e
    if not isinstance(data, dict):
        raise UpstreamParseError("Upstream record is not a JSON object", record=text)
    return data
