from prometheus_client import Counter, Histogram

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "wellness_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "wellness_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)

# Completion client
COMPLETION_REQUESTS_TOTAL = Counter(
    "wellness_completion_requests_total",
    "Completion API calls by outcome",
    ["provider", "outcome"],
)
COMPLETION_SECONDS = Histogram(
    "wellness_completion_seconds",
    "Duration of completion API calls in seconds (excluding pacing wait)",
    ["provider"],
)
COMPLETION_PACING_WAIT_SECONDS = Histogram(
    "wellness_completion_pacing_wait_seconds",
    "Time spent waiting for the minimum request interval",
    ["provider"],
)

# Sessions
SESSIONS_STARTED_TOTAL = Counter(
    "wellness_sessions_started_total",
    "Chat sessions started",
    ["status"],
)
SESSIONS_ENDED_TOTAL = Counter(
    "wellness_sessions_ended_total",
    "Chat sessions ended, by summary outcome",
    ["summary"],
)
SESSIONS_EVICTED_TOTAL = Counter(
    "wellness_sessions_evicted_total",
    "Idle session orchestrators closed; they re-attach on the next request",
)
ASSISTANT_TURNS_TOTAL = Counter(
    "wellness_assistant_turns_total",
    "Assistant turns by outcome",
    ["outcome"],
)
ASSISTANT_TURN_SECONDS = Histogram(
    "wellness_assistant_turn_seconds",
    "Perceived assistant turn latency including the minimum response delay",
)

# Change feed
FEED_DELIVERIES_TOTAL = Counter(
    "wellness_feed_deliveries_total",
    "Change feed events by outcome",
    ["outcome"],
)
