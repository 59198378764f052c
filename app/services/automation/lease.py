"""Run lease: keeps two scheduler ticks from evaluating rules at the same time.

Taking the lease is a single conditional UPDATE (or an INSERT guarded by
the primary key), so two runners racing for it can't both win. A crashed
runner's lease simply expires.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.models.automation import AutomationLease
from app.utils.datetime import utc_now_naive

logger = logging.getLogger(__name__)

RUN_LEASE_NAME = "automation-run"


class RunLease:
    def __init__(self, session_factory: Callable[[], Session], holder: str,
                 name: str = RUN_LEASE_NAME, seconds: Optional[int] = None):
        self.session_factory = session_factory
        self.holder = holder
        self.name = name
        self.seconds = seconds or settings.automation_lease_seconds

    def acquire(self) -> bool:
        # wall clock; the run's "now" may be pinned by the caller
        now = utc_now_naive()
        expires = now + timedelta(seconds=self.seconds)
        db = self.session_factory()
        try:
            taken = db.query(AutomationLease).filter(
                AutomationLease.name == self.name,
                AutomationLease.expires_at <= now,
            ).update(
                {"holder": self.holder, "acquired_at": now, "expires_at": expires},
                synchronize_session=False,
            )
            if taken:
                db.commit()
                return True

            if db.query(AutomationLease).filter(AutomationLease.name == self.name).first() is not None:
                db.rollback()
                return False

            db.add(AutomationLease(name=self.name, holder=self.holder, acquired_at=now, expires_at=expires))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True
        finally:
            db.close()

    def release(self) -> None:
        db = self.session_factory()
        try:
            db.query(AutomationLease).filter(
                AutomationLease.name == self.name,
                AutomationLease.holder == self.holder,
            ).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

