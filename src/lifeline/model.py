from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any

import pydantic
from pydantic import BeforeValidator, PlainSerializer


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_utc_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"Unsupported datetime value type: {type(value)!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _format_utc_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


UTCDateTime = Annotated[
    datetime,
    BeforeValidator(_parse_utc_datetime),
    PlainSerializer(_format_utc_datetime, return_type=str, when_used="always"),
]


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="ignore", validate_assignment=True)
