"""Backfill cursors and their opaque wire form.

A cursor is owned by the caller: the server never stores it, it only encodes
the state needed for the next call and decodes whatever it is handed back.
The wire form is URL-safe base64 over compact JSON so it survives query
strings and form posts unchanged.
"""

from __future__ import annotations

import base64
import binascii
from datetime import UTC, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import CursorError
from .models import Phase


class IngestCursor(BaseModel):
    phase: Literal["ingest"] = "ingest"
    page_token: str | None = None
    pending_ids: list[str] = Field(default_factory=list)
    pages_exhausted: bool = False
    total_listed: int = 0
    ingested_so_far: int = 0


class ParseCursor(BaseModel):
    phase: Literal["parse"] = "parse"
    total_to_parse: int = 0
    attempted_so_far: int = 0
    parsed_so_far: int = 0
    deals_matched: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FinalizeCursor(BaseModel):
    phase: Literal["finalize"] = "finalize"


BackfillCursor = Annotated[
    Union[IngestCursor, ParseCursor, FinalizeCursor],
    Field(discriminator="phase"),
]

_adapter: TypeAdapter[BackfillCursor] = TypeAdapter(BackfillCursor)


def encode_cursor(cursor: IngestCursor | ParseCursor | FinalizeCursor) -> str:
    raw = cursor.model_dump_json().encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(
    token: str | None,
    *,
    expected: Phase | None = None,
) -> IngestCursor | ParseCursor | FinalizeCursor | None:
    """Decode *token*; ``None`` or an empty string decodes to ``None``.

    Raises :class:`CursorError` when the token is not a cursor, or when
    *expected* is given and the cursor belongs to another phase.
    """
    if not token:
        return None
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode())
        cursor = _adapter.validate_json(raw)
    except (binascii.Error, ValueError, ValidationError) as exc:
        raise CursorError(f"Malformed backfill cursor: {exc}") from exc

    if expected is not None and cursor.phase != expected.value:
        raise CursorError(
            f"Cursor belongs to phase {cursor.phase!r}, not {expected.value!r}",
        )
    return cursor
