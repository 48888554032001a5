from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class IdGenerator(Protocol):
    def token_secret(self) -> str: ...

    def session_token(self) -> str: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class UuidIdGenerator:
    """Opaque secrets built from random UUIDs.

    Token secrets look like ``HF_<32 hex>_<epoch millis>``; session tokens
    like ``SES_<32 hex>``. Clients must treat both as opaque.
    """

    def token_secret(self) -> str:
        return f"HF_{uuid.uuid4().hex}_{int(time.time() * 1000)}"

    def session_token(self) -> str:
        return f"SES_{uuid.uuid4().hex}"


__all__ = ["Clock", "IdGenerator", "SystemClock", "UuidIdGenerator"]
