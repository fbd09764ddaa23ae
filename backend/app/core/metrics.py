"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Reconciliation metrics
try:
    reconciliation_outcomes_counter = Counter(
        'rides_payment_reconciliations_total',
        'Total number of payment reconciliation outcomes',
        ['source', 'outcome']
    )
except ValueError:
    reconciliation_outcomes_counter = REGISTRY._names_to_collectors.get('rides_payment_reconciliations_total')

try:
    amount_mismatch_counter = Counter(
        'rides_payment_amount_mismatch_total',
        'Confirmations rejected because the gateway amount did not match the plan price',
        ['subscription_type']
    )
except ValueError:
    amount_mismatch_counter = REGISTRY._names_to_collectors.get('rides_payment_amount_mismatch_total')

# Gateway metrics
try:
    gateway_requests_counter = Counter(
        'rides_mmg_requests_total',
        'Total number of outbound MMG gateway requests',
        ['operation', 'status']
    )
except ValueError:
    gateway_requests_counter = REGISTRY._names_to_collectors.get('rides_mmg_requests_total')

# Webhook audit metrics
try:
    webhook_log_failures_counter = Counter(
        'rides_mmg_webhook_log_failures_total',
        'Number of MMG callbacks whose audit row could not be written'
    )
except ValueError:
    webhook_log_failures_counter = REGISTRY._names_to_collectors.get('rides_mmg_webhook_log_failures_total')

# Checkout metrics
try:
    checkouts_counter = Counter(
        'rides_mmg_checkouts_total',
        'Total number of MMG checkout sessions initiated'
    )
except ValueError:
    checkouts_counter = REGISTRY._names_to_collectors.get('rides_mmg_checkouts_total')
