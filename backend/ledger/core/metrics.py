"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'ledger_webhook_events_total',
        'Total number of gateway webhook events received',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('ledger_webhook_events_total')

# Payout metrics
try:
    payouts_counter = Counter(
        'ledger_payouts_total',
        'Total number of payout attempts by resulting status',
        ['status']
    )
except ValueError:
    payouts_counter = REGISTRY._names_to_collectors.get('ledger_payouts_total')

try:
    payout_races_counter = Counter(
        'ledger_payout_races_total',
        'Payout requests aborted because a concurrent request held the balance'
    )
except ValueError:
    payout_races_counter = REGISTRY._names_to_collectors.get('ledger_payout_races_total')

# Refund metrics
try:
    refunds_counter = Counter(
        'ledger_refunds_total',
        'Total number of refund attempts by outcome',
        ['outcome']
    )
except ValueError:
    refunds_counter = REGISTRY._names_to_collectors.get('ledger_refunds_total')

# Fraud metrics
try:
    fraud_flags_counter = Counter(
        'ledger_fraud_flags_created_total',
        'Fraud flags opened by the scanner',
        ['flag_type']
    )
except ValueError:
    fraud_flags_counter = REGISTRY._names_to_collectors.get('ledger_fraud_flags_created_total')

try:
    fraud_scan_runs_counter = Counter(
        'ledger_fraud_scan_runs_total',
        'Total number of fraud scan runs',
        ['status']
    )
except ValueError:
    fraud_scan_runs_counter = REGISTRY._names_to_collectors.get('ledger_fraud_scan_runs_total')

# Gateway metrics
try:
    gateway_retries_counter = Counter(
        'ledger_gateway_retries_total',
        'Retries of outbound payment gateway commands',
        ['command']
    )
except ValueError:
    gateway_retries_counter = REGISTRY._names_to_collectors.get('ledger_gateway_retries_total')

try:
    open_fraud_flags_gauge = Gauge(
        'ledger_open_fraud_flags',
        'Fraud flags awaiting human review after the last scan'
    )
except ValueError:
    open_fraud_flags_gauge = REGISTRY._names_to_collectors.get('ledger_open_fraud_flags')
