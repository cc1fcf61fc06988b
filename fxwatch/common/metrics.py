from prometheus_client import Counter, Gauge, Histogram

# ----------------------------
# Ingestion
# ----------------------------
TICKS_ACCEPTED = Counter(
    "fxwatch_ticks_accepted_total",
    "Ticks accepted into the ledger",
    ["pair", "price_type"],
)
TICKS_REJECTED = Counter(
    "fxwatch_ticks_rejected_total",
    "Ticks dropped before reaching the ledger",
    ["reason"],
)
TICKS_OUTLIER = Counter(
    "fxwatch_ticks_outlier_total",
    "Ticks flagged as outliers (statistical or quarantined)",
    ["pair", "source"],
)
INGEST_ERRORS = Counter(
    "fxwatch_ingest_errors_total",
    "Unexpected exceptions swallowed on the ingestion path",
)

# ----------------------------
# Alerts
# ----------------------------
ALERTS_EMITTED = Counter(
    "fxwatch_alerts_emitted_total",
    "Alerts emitted",
    ["window", "severity"],
)
ALERTS_SUPPRESSED = Counter(
    "fxwatch_alerts_suppressed_total",
    "Candidate alerts not emitted",
    ["reason"],
)
BUS_DROPS = Counter(
    "fxwatch_alert_bus_drops_total",
    "Alerts dropped because a subscriber queue was full",
)

# ----------------------------
# Persistence
# ----------------------------
FLUSH_LATENCY = Histogram(
    "fxwatch_flush_latency_seconds",
    "Time spent in one flush pass",
)
FLUSH_ERRORS = Counter(
    "fxwatch_flush_errors_total",
    "Persistence errors by classification",
    ["kind"],
)
LAST_FLUSH_TS = Gauge(
    "fxwatch_last_flush_timestamp",
    "Unix timestamp of the last flush pass that completed without error",
)
DIRTY_CANDLES = Gauge(
    "fxwatch_dirty_candles",
    "Candle buckets waiting to be persisted",
)
