from lifeline.storage.request_store import UPDATE_ATTEMPTS, RequestStore
from lifeline.storage.types import (
    ApprovalFacts,
    DeliveryRow,
    PullRequestFacts,
    RequestRow,
    StreamEventRow,
    StreamStateRow,
)

__all__ = [
    "ApprovalFacts",
    "DeliveryRow",
    "PullRequestFacts",
    "RequestRow",
    "RequestStore",
    "StreamEventRow",
    "StreamStateRow",
    "UPDATE_ATTEMPTS",
]
