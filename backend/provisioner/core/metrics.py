"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labelnames):
    # Re-importing the module (tests, reloads) must not register twice
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhooks_received_counter = _counter(
    'provisioner_webhooks_received_total',
    'Total number of Polar webhook events received',
    ['event_type', 'outcome']
)

# CRM metrics
crm_operations_counter = _counter(
    'provisioner_crm_operations_total',
    'Total number of CRM provisioning operations',
    ['operation', 'status']
)
