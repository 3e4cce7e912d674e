"""
Prometheus metrics configuration
"""
import os

from prometheus_client import (CONTENT_TYPE_LATEST, Counter, Histogram, Info,
                               generate_latest)
from prometheus_client.multiprocess import MultiProcessCollector
from prometheus_client.registry import REGISTRY

from record_flags.core.config import get_settings

# Check if we're in multiprocess mode
if os.environ.get('PROMETHEUS_MULTIPROC_DIR'):
    REGISTRY = MultiProcessCollector(REGISTRY)

# ============================================================================
# HTTP Metrics
# ============================================================================

http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

# ============================================================================
# Orchestration Run Metrics
# ============================================================================

flag_runs_total = Counter(
    'record_flag_runs_total',
    'Total number of record flag orchestration runs',
    ['status']  # status: 'settled', 'catalog_failed', 'provider_failed', 'superseded'
)

flag_run_duration_seconds = Histogram(
    'record_flag_run_duration_seconds',
    'Duration of a record flag run from resolution to settlement',
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

flag_stale_outcomes_total = Counter(
    'record_flag_stale_outcomes_total',
    'Unit outcomes discarded because their run was superseded by a refresh'
)

# ============================================================================
# Unit Invocation Metrics
# ============================================================================

flag_unit_invocations_total = Counter(
    'record_flag_unit_invocations_total',
    'Total number of flag computation unit invocations',
    ['unit_id', 'status']  # status: 'flags', 'empty', 'failure'
)

flag_unit_duration_seconds = Histogram(
    'record_flag_unit_duration_seconds',
    'Flag computation unit invocation duration in seconds',
    ['unit_id'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

flag_shared_data_fetches_total = Counter(
    'record_flag_shared_data_fetches_total',
    'Shared payload resolutions',
    ['source', 'status']  # source: 'provider', 'fallback'
)

# ============================================================================
# System Info
# ============================================================================

app_info = Info(
    'app_info',
    'Application information'
)

try:
    settings = get_settings()
    app_info.info({
        'app_name': settings.app_name,
        'app_env': settings.app_env,
        'version': '0.1.0'
    })
except Exception:
    pass  # Settings may not be available during import


def get_metrics():
    """
    Get Prometheus metrics in text format

    Returns:
        bytes: Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)


def get_metrics_content_type():
    """Get content type for Prometheus metrics"""
    return CONTENT_TYPE_LATEST
