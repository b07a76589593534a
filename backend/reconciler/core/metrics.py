"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-importing the module (tests, reloaders) must not re-register collectors
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


webhook_events_counter = _counter(
    'reconciler_webhook_events_total',
    'Inbound billing provider webhook events',
    ['event_type', 'outcome']
)

reconciliation_operations_counter = _counter(
    'reconciler_operations_total',
    'Reconciliation operations by outcome',
    ['operation', 'outcome']
)

provider_calls_counter = _counter(
    'reconciler_provider_calls_total',
    'Calls made to the billing provider',
    ['operation', 'outcome']
)

persistence_failures_counter = _counter(
    'reconciler_persistence_failures_total',
    'Durable store writes that failed or timed out',
    ['backend']
)
