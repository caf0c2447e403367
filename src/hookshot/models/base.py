"""Shared helpers for Hookshot models."""

from __future__ import annotations

import secrets
import time
from datetime import UTC, datetime
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def generate_id(prefix: str) -> str:
    """Generate a unique ID with a type prefix."""
    return f"{prefix}_{uuid4().hex[:12]}"


def generate_job_id(tenant_id: int | str, job_name: str) -> str:
    """Generate a queue job ID that sorts by tenant and creation time.

    Format: ``tenant-<tenant>-<name>-<epoch ms>-<random>``.
    """
    return f"tenant-{tenant_id}-{job_name}-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds (the store's clock unit)."""
    return int(time.time() * 1000)


def from_ms(value: int | float) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class WireModel(BaseModel):
    """Base for models read from or written to the camelCase wire format.

    Accepts both camelCase aliases and snake_case field names on input and
    ignores unknown keys so older producers keep working.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )
