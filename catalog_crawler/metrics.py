"""Prometheus metrics for the catalog crawler."""

from prometheus_client import Counter, Histogram, Info, start_http_server

# Application info
app_info = Info("catalog_crawler", "Catalog crawler application info")
app_info.info({"version": "0.1.0", "name": "catalog-crawler"})

# Page metrics
pages_scraped_total = Counter(
    "catalog_pages_scraped_total",
    "Category pages processed by the crawler",
    ["status"],  # success, failed, blocked
)

page_retries_total = Counter(
    "catalog_page_retries_total",
    "Retry attempts made after a failed page operation",
)

page_products_found = Histogram(
    "catalog_page_products_found",
    "Valid products extracted per listing page",
    buckets=[0, 1, 5, 10, 20, 40, 80],
)

# Job metrics
scrape_jobs_total = Counter(
    "catalog_scrape_jobs_total",
    "Scrape jobs by target type and terminal status",
    ["target_type", "status"],
)

scrape_job_duration_seconds = Histogram(
    "catalog_scrape_job_duration_seconds",
    "Wall-clock duration of tracked scrape jobs",
    ["target_type"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
)

# Persistence metrics
batch_writes_total = Counter(
    "catalog_batch_writes_total",
    "Incremental batch persistence outcomes",
    ["status"],  # success, failed
)

products_upserted_total = Counter(
    "catalog_products_upserted_total",
    "Products written through the batch coordinator",
)

# Politeness metrics
rate_limit_wait_seconds = Histogram(
    "catalog_rate_limit_wait_seconds",
    "Time spent waiting for a rate limiter token",
    buckets=[0.0, 0.5, 1.0, 3.0, 5.0, 10.0, 30.0],
)

robots_blocked_total = Counter(
    "catalog_robots_blocked_total",
    "URLs skipped because robots.txt disallows them",
)

# Selector health
selector_health_checks_total = Counter(
    "catalog_selector_health_checks_total",
    "Canary category checks by outcome",
    ["status"],  # passed, warning, failed, error
)


def record_page(status: str) -> None:
    """Record a processed category page."""
    pages_scraped_total.labels(status=status).inc()


def record_job(target_type: str, status: str, duration_seconds: float) -> None:
    """Record a finished scrape job."""
    scrape_jobs_total.labels(target_type=target_type, status=status).inc()
    scrape_job_duration_seconds.labels(target_type=target_type).observe(duration_seconds)


def record_batch(status: str, products: int = 0) -> None:
    """Record the outcome of an incremental batch write."""
    batch_writes_total.labels(status=status).inc()
    if products:
        products_upserted_total.inc(products)


def start_metrics_server(port: int) -> None:
    """Expose metrics over HTTP when a port is configured."""
    if port > 0:
        start_http_server(port)
