from prometheus_client import Counter, Histogram

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "faqai_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "faqai_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)

# Dispatch metrics
DISPATCH_ATTEMPTS_TOTAL = Counter(
    "faqai_dispatch_attempts_total",
    "Backend invocations by result",
    ["backend", "result"],
)
DISPATCH_OUTCOMES_TOTAL = Counter(
    "faqai_dispatch_outcomes_total",
    "Dispatch outcomes",
    ["outcome", "reason"],
)
BACKEND_CALL_SECONDS = Histogram(
    "faqai_backend_call_seconds",
    "Duration of a single backend invocation in seconds",
    ["backend"],
)
RESOURCE_QUARANTINES_TOTAL = Counter(
    "faqai_resource_quarantines_total",
    "Resources placed in quarantine",
    ["backend", "kind"],
)
