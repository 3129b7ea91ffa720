from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from flask import Response, request
import time

# Ingestion Metrics
archives_ingested_total = Counter("vault_archives_ingested_total", "Archives processed", ["status"])

bundles_committed_total = Counter("vault_bundles_committed_total", "Bundles committed to the version store", ["kind"])

unresolved_keys_total = Counter("vault_unresolved_keys_total", "Manifests skipped for a missing depot key")

# Store Metrics
store_write_retries_total = Counter("vault_store_write_retries_total", "Failed store write attempts that were retried")

store_write_duration_seconds = Histogram("vault_store_write_duration_seconds", "Store commit duration")

# Catalog Metrics
catalog_requests_total = Counter("vault_catalog_requests_total", "Catalog service requests", ["status"])

# Reconciliation Metrics
reconciled_titles_total = Counter("vault_reconciled_titles_total", "Titles checked by reconciliation", ["status"])

drifted_depots_total = Counter("vault_drifted_depots_total", "Depots whose stored revision drifted from the catalog")

ACTIVE_RECONCILIATIONS = Gauge("vault_active_reconciliations", "Number of reconciliation passes running")

# API Metrics
api_request_duration_seconds = Histogram(
    "vault_api_request_duration_seconds", "API request duration", ["endpoint", "method"]
)

api_requests_total = Counter("vault_api_requests_total", "Total API requests", ["endpoint", "method", "status_code"])


class ActiveReconciliationTracker:
    """Context manager for tracking active reconciliation passes.

    Example:
        with ACTIVE_RECONCILIATIONS.track_inprogress():
            run_pass()
    """

    def __enter__(self):
        ACTIVE_RECONCILIATIONS.inc()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        ACTIVE_RECONCILIATIONS.dec()
        return False


ACTIVE_RECONCILIATIONS.track_inprogress = ActiveReconciliationTracker


def init_metrics(app):
    @app.route("/api/metrics")
    def metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    @app.before_request
    def before_request():
        request.start_time = time.time()

    @app.after_request
    def after_request(response):
        duration = time.time() - getattr(request, "start_time", time.time())
        api_request_duration_seconds.labels(endpoint=request.endpoint or "unknown", method=request.method).observe(
            duration
        )
        api_requests_total.labels(
            endpoint=request.endpoint or "unknown", method=request.method, status_code=response.status_code
        ).inc()
        return response

    app.logger.info("Prometheus metrics initialized at /api/metrics")
