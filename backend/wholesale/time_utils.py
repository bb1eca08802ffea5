from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def encode_page_token(created_at: datetime, row_id: int) -> str:
    """
    Opaque, restartable page token for newest-first listings.

    Keeps full microsecond precision so rows sharing a second still page
    correctly; the id breaks ties.
    """
    raw = f"{created_at.isoformat()}|{row_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_page_token(token: str) -> tuple[datetime, int]:
    """Inverse of encode_page_token. Raises ValueError on a malformed token."""
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")
        stamp, row_id = raw.split("|", 1)
        return datetime.fromisoformat(stamp), int(row_id)
    except (UnicodeError, ValueError) as exc:
        raise ValueError("page_token is malformed") from exc
