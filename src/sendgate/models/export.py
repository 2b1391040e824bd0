"""Export pagination models."""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field

from sendgate.models.enums import ExportCollection

_CURSOR_VERSION = 1
# Largest value a bigint seq column can hold
_MAX_SEQ = 2**63 - 1


@dataclass(frozen=True)
class ExportCursor:
    """
    Resume point for an export walk.

    Wraps the last ``seq`` returned for a collection. Callers only ever see
    the encoded token; ``after_seq`` never leaves the service as a number.
    """

    collection: ExportCollection
    after_seq: int

    def encode(self) -> str:
        raw = json.dumps(
            {"v": _CURSOR_VERSION, "c": self.collection.value, "s": self.after_seq},
            separators=(",", ":"),
        )
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, token: str) -> "ExportCursor":
        """Decode a token; raises ValueError if it is not one we issued."""
        if not token or not isinstance(token, str):
            raise ValueError("empty cursor")
        padded = token + "=" * (-len(token) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
            data = json.loads(raw)
        except (binascii.Error, UnicodeError, json.JSONDecodeError) as e:
            raise ValueError("malformed cursor") from e

        if not isinstance(data, dict) or data.get("v") != _CURSOR_VERSION:
            raise ValueError("unsupported cursor version")
        after_seq = data.get("s")
        if type(after_seq) is not int or not 0 <= after_seq <= _MAX_SEQ:
            raise ValueError("malformed cursor position")
        try:
            collection = ExportCollection(data.get("c"))
        except ValueError as e:
            raise ValueError("unknown cursor collection") from e
        return cls(collection=collection, after_seq=after_seq)


class ExportPage(BaseModel):
    """One bounded page of an export walk."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    is_done: bool
