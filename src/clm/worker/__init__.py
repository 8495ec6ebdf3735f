"""Expiration sweep worker.

Periodically expires contracts whose term has elapsed, one lease-guarded
sweep per tenant.

Usage:
    # Run as module
    python -m clm.worker

    # Or via the console script
    clm-sweeper
"""

from clm.worker.main import SweepWorker, SweepWorkerConfig, config_from_settings, run

__all__ = ["SweepWorker", "SweepWorkerConfig", "config_from_settings", "run"]
