from prometheus_client import Counter, Gauge

ESCROW_OPERATIONS = Counter(
    "escrow_operations_total",
    "Escrow hold/release/refund operations",
    ["operation", "outcome"]
)

WALLET_TRANSACTIONS = Counter(
    "wallet_transactions_total",
    "Wallet ledger lines written",
    ["type", "status"]
)

ASSIGNMENT_RESPONSES = Counter(
    "assignment_responses_total",
    "Driver responses to assignment offers",
    ["outcome"]
)

MAINTENANCE_TASK_RUNS = Counter(
    "maintenance_task_runs_total",
    "Maintenance sub-task runs",
    ["task", "outcome"]
)

ONLINE_DRIVERS = Gauge(
    "online_drivers_total",
    "Current number of online drivers"
)

WALLET_DRIFT_ACCOUNTS = Gauge(
    "wallet_drift_accounts",
    "Wallet accounts whose balance disagrees with their approved ledger lines"
)
