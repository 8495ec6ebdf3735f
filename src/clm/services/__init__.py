"""Lifecycle service layer.

- ContractLifecycleService: Event log write path (record event, force status update)
- AlertEngine: Renewal and expiration alerts with acknowledgement
- ExpirationSweeper: Lease-guarded expiry of due contracts
- LifecycleQueryService: Listing, history and statistics
- StatusProjector: Replays logs against the stored projection
"""

from clm.services.alerting import AlertEngine
from clm.services.leases import SweepLeaseService
from clm.services.lifecycle import ContractLifecycleService, RecordResult
from clm.services.projector import ProjectionCheck, ProjectionError, StatusProjector
from clm.services.queries import LifecycleQueryService
from clm.services.sweeper import ExpirationSweeper

__all__ = [
    "AlertEngine",
    "ContractLifecycleService",
    "ExpirationSweeper",
    "LifecycleQueryService",
    "ProjectionCheck",
    "ProjectionError",
    "RecordResult",
    "StatusProjector",
    "SweepLeaseService",
]
