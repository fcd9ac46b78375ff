from __future__ import annotations

import json
import re
import secrets
import uuid
from dataclasses import dataclass

_UUID_PATTERN = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
_UUID_RE = re.compile(rf"^{_UUID_PATTERN}$", re.IGNORECASE)
_URL_RE = re.compile(rf"/bookings/({_UUID_PATTERN})", re.IGNORECASE)


@dataclass(frozen=True)
class TicketReference:
    booking_id: uuid.UUID
    token: str | None = None


def new_qr_token() -> str:
    return secrets.token_hex(16)


def parse_ticket_reference(raw: str | None) -> TicketReference | None:
    """
    Extract the booking id from scanned ticket content.

    Accepted forms: a JSON object with `booking_id` (and optionally `token`),
    a URL containing `/bookings/<uuid>`, or a bare UUID. Returns None when
    nothing usable is found.
    """
    if not raw or not isinstance(raw, str):
        return None
    text = raw.strip()

    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        candidate = parsed.get("booking_id")
        if not isinstance(candidate, str) or not _UUID_RE.match(candidate):
            return None
        token = parsed.get("token")
        return TicketReference(uuid.UUID(candidate), token if isinstance(token, str) and token else None)

    if _UUID_RE.match(text):
        return TicketReference(uuid.UUID(text))

    match = _URL_RE.search(text)
    if match:
        return TicketReference(uuid.UUID(match.group(1)))
    return None


def build_ticket_reference(booking_id: uuid.UUID, token: str) -> str:
    return json.dumps({"booking_id": str(booking_id), "token": token}, separators=(",", ":"))


def ticket_details_url(base_url: str, booking_id: uuid.UUID) -> str:
    return f"{base_url.rstrip('/')}/bookings/{booking_id}/details"
