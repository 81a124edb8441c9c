from prometheus_client import Counter, Gauge


queue_rebuilds_total = Counter(
    "reminder_queue_rebuilds_total",
    "Total full notification queue rebuilds",
)

queue_rebuild_failures_total = Counter(
    "reminder_queue_rebuild_failures_total",
    "Total notification queue rebuilds that failed for an owner",
)

queue_entries_written_total = Counter(
    "reminder_queue_entries_written_total",
    "Total notification queue entries upserted",
)

queue_sync_failures_total = Counter(
    "reminder_queue_sync_failures_total",
    "Total incremental queue syncs that failed after a write",
)

routine_instances_created_total = Counter(
    "routine_instances_created_total",
    "Total routine step instances created",
)

chain_successors_created_total = Counter(
    "reminder_chain_successors_created_total",
    "Total repeat-chain successors materialized",
)

dispatch_success_total = Counter(
    "reminders_dispatch_success_total",
    "Total successful channel dispatches",
)

dispatch_failed_total = Counter(
    "reminders_dispatch_failed_total",
    "Total failed channel dispatches",
)

stale_queue_entries = Gauge(
    "reminder_stale_queue_entries",
    "Unsent queue entries older than the stale threshold, per last check",
)
