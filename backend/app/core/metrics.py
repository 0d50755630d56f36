"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-imports (tests, reloads) must not register the same collector twice
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'billing_webhook_events_total',
    'Total number of processor notifications received',
    ['event_type', 'result']
)

webhook_signature_failures_counter = _counter(
    'billing_webhook_signature_failures_total',
    'Total number of notifications rejected for an invalid signature'
)

# Plan change metrics
plan_changes_counter = _counter(
    'billing_plan_changes_total',
    'Total number of plan change requests by outcome',
    ['outcome']
)

scheduled_downgrades_counter = _counter(
    'billing_scheduled_downgrades_total',
    'Total number of scheduled downgrade applications',
    ['status']
)

# Processor metrics
processor_errors_counter = _counter(
    'billing_processor_errors_total',
    'Total number of failed payment processor calls',
    ['operation', 'kind']
)
