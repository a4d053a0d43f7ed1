from prometheus_client import Counter, Histogram, make_asgi_app

# Route templates as labels (e.g. /api/v1/batches/{batch_id}) keep cardinality low
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)

LATENCY = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "route"],
)

BLOB_OPERATIONS = Counter(
    "blob_operations_total",
    "Blob store operations against the object store",
    ["operation", "outcome"],
)

BLOB_OPERATION_LATENCY = Histogram(
    "blob_operation_duration_seconds",
    "Blob store operation latency in seconds",
    ["operation"],
)

GC_RUNS = Counter(
    "blob_gc_runs_total",
    "Completed garbage collection sweeps",
    ["collector"],
)

GC_BINARIES = Counter(
    "blob_gc_binaries_total",
    "Binaries seen by garbage collection sweeps",
    ["collector", "state"],
)

GC_BYTES = Counter(
    "blob_gc_bytes_total",
    "Bytes seen by garbage collection sweeps",
    ["collector", "state"],
)

# /metrics ASGI app
metrics_app = make_asgi_app()
