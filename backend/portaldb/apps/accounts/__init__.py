# backend/portaldb/apps/accounts/__init__.py
"""
Accounts app

Responsible for:
- Tenant (org) definitions
- User accounts and their portal role

Sign-in is handled by the external identity provider; this app only
stores who belongs to which org and who holds the admin capability.
Other apps (breaklock, notifications) should depend on these models
for anything related to "who is allowed to do what".
"""

from . import models, schemas  # noqa: F401

__all__ = ["models", "schemas"]
