from __future__ import annotations

import logging
import os
import threading
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from compass.models import Tenant

log = logging.getLogger(__name__)

DEFAULT_TENANT_NAME = "default"


class TenantRegistry:
    """Owns the cached default tenant id.

    Create one per process and pass it to whatever needs a default tenant.
    ``initialize()`` resolves (or creates) the default tenant up front;
    ``invalidate()`` drops the cache so the next lookup hits the database.
    """

    def __init__(self, fixed_default_id: str | None = None):
        self._fixed = fixed_default_id if fixed_default_id is not None else os.environ.get("DEFAULT_TENANT_ID")
        self._lock = threading.Lock()
        self._cached: str | None = None

    def initialize(self, session: Session) -> str:
        self.invalidate()
        return self.default_tenant_id(session)

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def default_tenant_id(self, session: Session) -> str:
        if self._fixed:
            return self._fixed
        with self._lock:
            if self._cached:
                return self._cached
        row = session.execute(
            select(Tenant).where(Tenant.name == DEFAULT_TENANT_NAME).order_by(Tenant.created_at)
        ).scalars().first()
        if row is None:
            row = Tenant(name=DEFAULT_TENANT_NAME, created_at=datetime.now(UTC))
            session.add(row)
            session.flush()
            log.info("Created default tenant %s", row.id)
        with self._lock:
            self._cached = row.id
        return row.id


def ensure_tenant(session: Session, tenant_id: str) -> bool:
    """Provision a tenant row for *tenant_id* if missing. Returns True when created."""
    exists = session.execute(select(Tenant.id).where(Tenant.id == tenant_id)).first()
    if exists:
        return False
    session.add(Tenant(id=tenant_id, created_at=datetime.now(UTC)))
    session.flush()
    log.info("Provisioned tenant %s", tenant_id)
    return True
