# backend/portaldb/__init__.py
"""
Import ORM models from each app so that:

- Alembic and Base.metadata.create_all() see all tables.
- The package exposes a clear surface.

The actual model classes are kept in portaldb/apps/*/models.py.
"""

from .apps.accounts import models as accounts_models            # orgs / users
from .apps.audit import models as audit_models                  # audit trail
from .apps.breaklock import models as breaklock_models          # break records + capacity
from .apps.notifications import models as notifications_models  # push subscriptions + logs

__all__ = [
    "accounts_models",
    "audit_models",
    "breaklock_models",
    "notifications_models",
]
