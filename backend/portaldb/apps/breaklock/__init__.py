# backend/portaldb/apps/breaklock/__init__.py
"""
BreakLock app

A per-org pool of break slots:
- start / end / admin override / expiry transitions
- capacity configuration (admin only)
- the expiry sweep run by `portaldb.jobs.breaklock_tick`

Every state change commits under the pool lock and then wakes SSE
observers through `portaldb.apps.events.broker`.
"""

from . import errors, models  # noqa: F401

__all__ = ["errors", "models"]
