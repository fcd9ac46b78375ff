from __future__ import annotations

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Optional

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# Incoming ids end up in logs; anything outside this shape is replaced.
_ALLOWED = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def generate_request_id() -> str:
    return uuid.uuid4().hex


def normalize_request_id(raw: str | None) -> str:
    """Return the caller's id when it is safe to log, else a fresh one."""
    if raw and _ALLOWED.match(raw.strip()):
        return raw.strip()
    return generate_request_id()


def set_request_id(request_id: str | None) -> None:
    _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


class RequestIdFilter(logging.Filter):
    """Expose the current request id to formatters as `%(request_id)s`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True
