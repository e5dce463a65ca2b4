from prometheus_client import Counter, Histogram, Gauge

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "mockmate_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "mockmate_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)

# Consumption ledger
LEDGER_TRANSITIONS_TOTAL = Counter(
    "mockmate_ledger_transitions_total",
    "Consumption record transitions",
    ["work_type", "status"],
)
LEDGER_REJECTIONS_TOTAL = Counter(
    "mockmate_ledger_rejections_total",
    "Ledger begin() calls rejected before any debit",
    ["work_type", "reason"],
)
# Non-zero means a balance needs operator attention
LEDGER_REFUND_FAILURES_TOTAL = Counter(
    "mockmate_ledger_refund_failures_total",
    "Refunds that failed inside abort()",
    ["work_type"],
)

# Generation streaming
GENERATION_TTFT_SECONDS = Histogram(
    "mockmate_generation_ttft_seconds",
    "Time to first fragment from the generation backend in seconds",
    ["provider", "model"],
)
GENERATION_TOTAL_SECONDS = Histogram(
    "mockmate_generation_total_seconds",
    "Total generation duration in seconds",
    ["provider", "model", "outcome"],
)

# Recovery writes
RECOVERY_WRITES_TOTAL = Counter(
    "mockmate_recovery_writes_total",
    "Recovery writer operations",
    ["op", "outcome"],
)
RECOVERY_MIRROR_SECONDS = Histogram(
    "mockmate_recovery_mirror_seconds",
    "Duration of result mirror HTTP writes in seconds",
)

# Sessions
SESSIONS_ACTIVE = Gauge("mockmate_sessions_active", "Sessions held in the registry")
SESSIONS_TERMINATED_TOTAL = Counter(
    "mockmate_sessions_terminated_total",
    "Sessions reaching a terminal state",
    ["job_kind", "reason"],
)
