from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import Tuple


def encode_audit_cursor(timestamp: datetime, sequence_id: int) -> str:
    """Opaque keyset cursor pointing just past an entry in newest-first order."""

    ts = timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=timezone.utc)
    raw = f"{ts.isoformat()}|{sequence_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_audit_cursor(cursor: str) -> Tuple[datetime, int]:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        stamp, _, seq = raw.partition("|")
        ts = datetime.fromisoformat(stamp)
        sequence_id = int(seq)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError("invalid audit cursor") from exc
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts, sequence_id
