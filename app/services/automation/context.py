"""Per-run context and result counters.

Everything a run needs to know about "this invocation" travels in a
RunContext; there is no module-level run state.
"""
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import List, Optional

from app.core.settings import settings
from app.utils.datetime import to_naive_utc, utc_now_naive


@dataclass
class RunContext:
    run_id: str
    now: datetime  # naive UTC, fixed for the whole run
    event_window: timedelta
    deadline: Optional[float] = None  # time.monotonic() value
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def create(
        cls,
        now: Optional[datetime] = None,
        timeout_seconds: Optional[int] = None,
        event_window_minutes: Optional[int] = None,
    ) -> "RunContext":
        timeout = settings.automation_run_timeout_seconds if timeout_seconds is None else timeout_seconds
        window = event_window_minutes or settings.automation_event_window_minutes
        return cls(
            run_id=uuid.uuid4().hex[:12],
            now=to_naive_utc(now) if now is not None else utc_now_naive(),
            event_window=timedelta(minutes=window),
            deadline=time.monotonic() + timeout if timeout else None,
        )

    def cancel(self) -> None:
        self.cancel_event.set()

    def should_stop(self) -> bool:
        if self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline


@dataclass
class RuleResult:
    rule_id: str
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    muted: int = 0
    recovered: int = 0
    aborted: bool = False
    error: Optional[str] = None


@dataclass
class RunSummary:
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    muted: int = 0
    recovered: int = 0
    rules_evaluated: int = 0
    quarantined_rules: List[str] = field(default_factory=list)
    failed_rules: List[str] = field(default_factory=list)
    aborted: bool = False
    locked: bool = False

    def add(self, result: RuleResult) -> None:
        self.rules_evaluated += 1
        self.processed += result.processed
        self.sent += result.sent
        self.skipped += result.skipped
        self.failed += result.failed
        self.muted += result.muted
        self.recovered += result.recovered
        self.aborted = self.aborted or result.aborted
        if result.error:
            self.failed_rules.append(result.rule_id)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data
