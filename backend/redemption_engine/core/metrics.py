"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, Histogram, REGISTRY

# Redemption metrics
try:
    redemption_outcomes_counter = Counter(
        'redemption_engine_redemptions_total',
        'Total number of subscription redemptions by outcome',
        ['outcome']
    )
except ValueError:
    redemption_outcomes_counter = REGISTRY._names_to_collectors.get('redemption_engine_redemptions_total')

try:
    subscriptions_completed_counter = Counter(
        'redemption_engine_subscriptions_completed_total',
        'Total number of subscriptions that reached the end of their term'
    )
except ValueError:
    subscriptions_completed_counter = REGISTRY._names_to_collectors.get('redemption_engine_subscriptions_completed_total')

# Settlement metrics
try:
    settlement_attempts_counter = Counter(
        'redemption_engine_settlement_attempts_total',
        'Total number of settlement calls by result',
        ['result']
    )
except ValueError:
    settlement_attempts_counter = REGISTRY._names_to_collectors.get('redemption_engine_settlement_attempts_total')

# Batch metrics
try:
    batch_runs_counter = Counter(
        'redemption_engine_batch_runs_total',
        'Total number of redemption batch runs',
        ['status']
    )
except ValueError:
    batch_runs_counter = REGISTRY._names_to_collectors.get('redemption_engine_batch_runs_total')

try:
    critical_failures_counter = Counter(
        'redemption_engine_critical_failures_total',
        'Total number of post-settlement persistence failures that rolled back a batch'
    )
except ValueError:
    critical_failures_counter = REGISTRY._names_to_collectors.get('redemption_engine_critical_failures_total')

try:
    last_batch_size_gauge = Gauge(
        'redemption_engine_last_batch_size',
        'Number of due subscriptions found by the most recent batch'
    )
except ValueError:
    last_batch_size_gauge = REGISTRY._names_to_collectors.get('redemption_engine_last_batch_size')

try:
    batch_duration_histogram = Histogram(
        'redemption_engine_batch_duration_seconds',
        'Wall-clock duration of redemption batch runs'
    )
except ValueError:
    batch_duration_histogram = REGISTRY._names_to_collectors.get('redemption_engine_batch_duration_seconds')


def record_batch_result(result):
    """Publish the counts of a finished batch"""
    last_batch_size_gauge.set(result.found)
    redemption_outcomes_counter.labels(outcome="succeeded").inc(result.succeeded)
    redemption_outcomes_counter.labels(outcome="failed").inc(result.failed)
    redemption_outcomes_counter.labels(outcome="skipped").inc(result.skipped)
    subscriptions_completed_counter.inc(result.completed)
