from prometheus_client import Counter, Histogram

PROVIDER_REQUESTS = Counter("provider_requests_total", "Upstream requests", ["provider"])
PROVIDER_ERRORS   = Counter("provider_errors_total",   "Upstream errors",   ["provider", "category"])
PROVIDER_RETRIES  = Counter("provider_retries_total",  "Upstream retries",  ["provider"])
PROVIDER_LATENCY  = Histogram("provider_request_seconds", "Upstream latency", ["provider"])

CACHE_LOOKUPS = Counter("cache_lookups_total", "Cache lookups", ["namespace", "result"])
RATE_LIMIT_WAITS = Counter("rate_limit_waits_total", "Calls delayed by the token bucket", ["provider"])

STEP_LATENCY = Histogram("pipeline_step_seconds", "Pipeline step latency", ["step", "status"])
SUPPLEMENT_CYCLES = Counter("pipeline_supplement_cycles_total", "Supplement search cycles", ["outcome"])
BATCH_ITEMS = Counter("batch_items_total", "Batch item outcomes", ["status"])
