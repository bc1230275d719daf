from __future__ import annotations

from typing import Any

from lifeline.lifecycle.types import CanonicalStatus, is_active_status, is_terminal_status


def get_polling_interval(
    status: CanonicalStatus | str | None,
    settings: Any,
    *,
    tab_hidden: bool = False,
    rate_limited: bool = False,
) -> int:
    """Milliseconds until the next status poll, 0 meaning stop polling."""
    if status is not None and is_terminal_status(status):
        return 0
    if rate_limited:
        return settings.SYNC_RATE_LIMIT_BACKOFF_MS
    if tab_hidden:
        return settings.SYNC_INTERVAL_HIDDEN_MS
    if status is not None and is_active_status(status):
        return settings.SYNC_INTERVAL_ACTIVE_MS
    return settings.SYNC_INTERVAL_IDLE_MS
