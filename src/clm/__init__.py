"""Contract lifecycle engine.

Tracks contract status through an append-only event log, raises renewal and
expiration alerts, and sweeps expired contracts under a per-tenant lease.
"""

__version__ = "0.1.0"
