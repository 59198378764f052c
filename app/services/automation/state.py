"""State Store: one UserAutomationState row per (rule, user).

Writes are single-row and flushed by the caller's commit; nothing here
spans more than one user.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Collection, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.automation import ActionKind, UserAutomationState
from app.utils.datetime import to_naive_utc

logger = logging.getLogger(__name__)

_ACTION_COLUMNS = {
    ActionKind.auto_message: "last_message_at",
    ActionKind.alert_only: "last_alert_at",
    ActionKind.assisted: "last_escalation_at",
}


class StateStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, rule_id: str, user_id: str) -> Optional[UserAutomationState]:
        return self.db.query(UserAutomationState).filter(
            UserAutomationState.rule_id == rule_id,
            UserAutomationState.user_id == user_id,
        ).first()

    def load(self, rule_id: str, user_id: str, now: datetime) -> UserAutomationState:
        """Fetch the row, creating it at stage 0 on first evaluation."""
        state = self.get(rule_id, user_id)
        if state is not None:
            return state
        state = UserAutomationState(
            rule_id=rule_id,
            user_id=user_id,
            current_stage=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(state)
        try:
            self.db.commit()
        except IntegrityError:
            # Created concurrently (e.g. a mute set through the API)
            self.db.rollback()
            state = self.get(rule_id, user_id)
        return state

    def advance(self, state: UserAutomationState, stage: int, now: datetime) -> None:
        if stage <= state.current_stage:
            raise ValueError(f"advance must increase the stage ({state.current_stage} -> {stage})")
        state.current_stage = stage
        state.updated_at = now

    def reset(self, state: UserAutomationState, now: datetime) -> None:
        state.current_stage = 0
        state.updated_at = now

    def stamp_action(self, state: UserAutomationState, kind: ActionKind, now: datetime) -> None:
        setattr(state, _ACTION_COLUMNS[ActionKind(kind)], now)

    def mute(self, rule_id: str, user_id: str, until: datetime, now: datetime) -> UserAutomationState:
        state = self.load(rule_id, user_id, now)
        state.muted_until = to_naive_utc(until)
        state.updated_at = now
        self.db.commit()
        return state

    def unmute(self, rule_id: str, user_id: str, now: datetime) -> Optional[UserAutomationState]:
        state = self.get(rule_id, user_id)
        if state is None:
            return None
        state.muted_until = None
        state.updated_at = now
        self.db.commit()
        return state

    def recover_absent(self, rule_id: str, seen_user_ids: Collection[str], now: datetime) -> List[Tuple[str, int]]:
        """Reset to 0 every unmuted, staged user missing from this run's audience.

        Only meaningful for event, standing and calendar triggers, where the
        audience itself is the condition. Returns (user_id, previous_stage) for each reset.
        """
        staged = self.db.query(UserAutomationState).filter(
            UserAutomationState.rule_id == rule_id,
            UserAutomationState.current_stage > 0,
        ).all()
        recovered = []
        for state in staged:
            if state.user_id in seen_user_ids or state.is_muted(now):
                continue
            recovered.append((state.user_id, state.current_stage))
            self.reset(state, now)
        if recovered:
            self.db.commit()
        return recovered

    def at_risk(self, rule_id: str) -> List[UserAutomationState]:
        return self.db.query(UserAutomationState).filter(
            UserAutomationState.rule_id == rule_id,
            UserAutomationState.current_stage > 0,
        ).order_by(UserAutomationState.current_stage.desc(), UserAutomationState.updated_at.desc()).all()

    def for_user(self, user_id: str) -> List[UserAutomationState]:
        return self.db.query(UserAutomationState).filter(
            UserAutomationState.user_id == user_id
        ).order_by(UserAutomationState.updated_at.desc()).all()
