from prometheus_client import Counter, Histogram

# Inbound notifications by result
NOTIFICATION_COUNT = Counter(
    "websub_notification_total",
    "Total number of WebSub notifications received",
    ["status"]
)

# Per-target dispatch outcomes
TARGET_OUTCOME_COUNT = Counter(
    "dispatch_target_outcome_total",
    "Total number of per-target dispatch outcomes",
    ["status"]
)

# Processing time
DISPATCH_DURATION = Histogram(
    "dispatch_duration_seconds",
    "Time spent dispatching one video event to all targets"
)

# Reddit OAuth refreshes
TOKEN_REFRESH_COUNT = Counter(
    "reddit_token_refresh_total",
    "Total number of Reddit access token refreshes",
    ["status"]
)

# Lease renewals
RENEWAL_COUNT = Counter(
    "websub_renewal_total",
    "Total number of WebSub lease renewal attempts",
    ["status"]
)
