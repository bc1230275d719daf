import re

from prometheus_client import Counter, Histogram

request_counter = Counter(
    "lifeline_num_req", "Total number of requests", labelnames=["path"]
)

webhook_counter = Counter(
    "lifeline_num_webhook",
    "Total number of webhook deliveries by outcome",
    labelnames=["event", "outcome"],
)

signature_rejected_counter = Counter(
    "lifeline_webhook_signature_rejected",
    "Number of webhook deliveries with a bad or missing signature",
)

webhook_processing_seconds = Histogram(
    "lifeline_webhook_processing_seconds",
    "Time spent ingesting a webhook delivery",
    labelnames=["event", "outcome"],
)

repair_counter = Counter(
    "lifeline_num_repair",
    "Number of repair (API refresh) attempts by result",
    labelnames=["result"],
)

api_call_count = Counter(
    "lifeline_num_api_calls",
    "Total number of GitHub API calls",
    labelnames=["endpoint"],
)

stream_append_counter = Counter(
    "lifeline_stream_append",
    "Number of stream events appended",
    labelnames=["type"],
)

error_counter = Counter(
    "lifeline_error_counter", "Total number of errors", labelnames=["context"]
)


_RUN_ID_PATTERN = re.compile(r"/actions/runs/\d+$")


def _normalize_api_endpoint(endpoint: str) -> str:
    path = endpoint.split("?", 1)[0]
    if _RUN_ID_PATTERN.search(path):
        return "actions/runs/xxx"
    if path.endswith("/actions/runs"):
        return "actions/runs"
    if "/pulls" in path:
        return "pulls"
    return path.rsplit("/", 1)[-1] or "unknown"


def record_api_call(endpoint: str) -> None:
    api_call_count.labels(endpoint=_normalize_api_endpoint(endpoint)).inc()


def observe_webhook_processing_latency(event: str, outcome: str, seconds: float) -> None:
    webhook_processing_seconds.labels(event=event, outcome=outcome).observe(seconds)
