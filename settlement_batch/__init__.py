"""
settlement_batch -- cron-triggered settlement passes.

Runs the periodic work of the settlement engine as batch jobs: due-status
refresh, follow-up reconciliation, follow-up scheduling and follow-up
dispatch.  Each job is persisted with per-item results; every item runs in
its own SAVEPOINT so one failing invoice never aborts the pass.

Architecture:
    Top-level package.  Nothing in settlement_kernel, settlement_engines or
    settlement_modules imports from settlement_batch.

Entry point::

    python -m settlement_batch run all --config settlement.yaml
"""
