"""Session processing infrastructure.

Modules:
    schedule        — Retry delays, completeness tiers, fallback timing
    orchestrator    — Per-attempt state machine (fetch → impute → gate → score)
    credential_lock — Per-patient credential lock with staleness takeover
    workers         — Periodic drivers, triggers and bounded task dispatch
    historical_sync — Bulk telemetry sync feeding the fallback attempt
    dedup           — Sample merging and reading deduplication
"""
