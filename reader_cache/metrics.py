import time
from fastapi import FastAPI, Request, Response
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# --- Metric objects ---
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["path", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_latency_seconds",
    "Request latency seconds",
    labelnames=["path", "method"],
)
CACHE_HITS = Counter(
    "page_cache_hits_total", "Page cache hits", labelnames=["cache", "tier"]
)
CACHE_MISSES = Counter(
    "page_cache_misses_total", "Page cache misses", labelnames=["cache"]
)
CACHE_EVICTIONS = Counter(
    "page_cache_evictions_total",
    "Entries dropped from the recent queue",
    labelnames=["cache", "reason"],
)
GENERATIONS = Counter(
    "artifact_generations_total",
    "Settled artifact generations",
    labelnames=["cache", "outcome"],
)
GENERATION_LATENCY = Histogram(
    "artifact_generation_seconds",
    "Artifact generation latency seconds",
    labelnames=["cache"],
)
COALESCED = Counter(
    "artifact_generation_coalesced_total",
    "Requests that joined an in-flight generation",
    labelnames=["cache"],
)
PREFETCH = Counter(
    "prefetch_requests_total",
    "Background prefetch attempts",
    labelnames=["cache", "outcome"],
)
OPEN_SESSIONS_G = Gauge("reader_open_sessions", "Open document sessions")
QUEUE_DEPTH_G = Gauge(
    "prefetch_queue_depth",
    "Prefetch targets waiting for a free slot",
    labelnames=["cache"],
)


# --- Public helpers the cache layers call ---
def record_cache_hit(cache: str = "page", tier: str = "adjacent"):
    CACHE_HITS.labels(cache=cache, tier=tier).inc()


def record_cache_miss(cache: str = "page"):
    CACHE_MISSES.labels(cache=cache).inc()


def record_eviction(reason: str, cache: str = "page"):
    CACHE_EVICTIONS.labels(cache=cache, reason=reason).inc()


def record_generation(outcome: str, seconds: float, cache: str = "page"):
    GENERATIONS.labels(cache=cache, outcome=outcome).inc()
    GENERATION_LATENCY.labels(cache=cache).observe(seconds)


def record_coalesced(cache: str = "page"):
    COALESCED.labels(cache=cache).inc()


def record_prefetch(outcome: str, cache: str = "page"):
    PREFETCH.labels(cache=cache, outcome=outcome).inc()


def observe_sessions(n: int) -> None:
    OPEN_SESSIONS_G.set(n)


def adjust_queue_depth(delta: int, cache: str = "page") -> None:
    # Summed over every open document of the same kind
    if delta:
        QUEUE_DEPTH_G.labels(cache=cache).inc(delta)


# --- Installation: middleware + /metrics endpoint ---
def install(app: FastAPI) -> None:
    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = getattr(response, "status_code", 500)
            return response
        finally:
            dur = time.perf_counter() - t0
            REQUEST_LATENCY.labels(
                path=request.url.path, method=request.method
            ).observe(dur)
            REQUESTS.labels(
                path=request.url.path,
                method=request.method,
                status=str(status),
            ).inc()

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
