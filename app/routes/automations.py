"""Automation rule management and dashboard reads.

Coaches manage their own coach-scoped rules; admins manage every rule.
Rule payloads go through the same validation the engine applies when it
loads rules, so a rule accepted here will never be quarantined.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from app.db import get_db
from app.exceptions import ForbiddenException, NotFoundException, RuleConfigError, ValidationException
from app.models.automation import AutomationRule, RuleScope
from app.models.user import User, UserRole
from app.schemas.automation import (
    LogOut,
    MuteRequest,
    RuleDefinition,
    RuleOut,
    RuleUpdate,
    StateOut,
)
from app.services.auth import require_coach_or_admin
from app.services.automation.audience import UserDirectory
from app.services.automation.audit_log import AuditLog
from app.services.automation.rules import rule_to_mapping, validate_rule_definition
from app.services.automation.state import StateStore
from app.utils.datetime import utc_now_naive

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/automations", tags=["Automations"])


def _is_admin(user: User) -> bool:
    return user.role == UserRole.admin


def _get_rule(db: Session, rule_id: str, current_user: User) -> AutomationRule:
    rule = db.query(AutomationRule).filter(AutomationRule.id == rule_id).first()
    if not rule:
        raise NotFoundException("Automation rule", rule_id)
    if not _is_admin(current_user) and rule.owner_id != current_user.id:
        raise ForbiddenException("You can only manage your own automation rules")
    return rule


def _validated(rule_id: str, raw: dict) -> RuleDefinition:
    try:
        definition, _, _ = validate_rule_definition(rule_id, raw)
    except RuleConfigError as e:
        raise ValidationException(e.detail)
    return definition


def _apply(rule: AutomationRule, definition: RuleDefinition) -> None:
    data = definition.model_dump(mode="json")
    for field in data:
        if field == "scope":
            rule.scope = definition.scope
        else:
            setattr(rule, field, data[field])


@router.get("/rules", response_model=List[RuleOut])
def list_rules(
    enabled: Optional[bool] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    q = db.query(AutomationRule)
    if not _is_admin(current_user):
        q = q.filter(AutomationRule.owner_id == current_user.id)
    if enabled is not None:
        q = q.filter(AutomationRule.enabled.is_(enabled))
    return q.order_by(AutomationRule.priority.desc(), AutomationRule.created_at).all()


@router.post("/rules", response_model=RuleOut, status_code=201)
def create_rule(
    payload: RuleDefinition,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    raw = payload.model_dump()
    if not _is_admin(current_user):
        # Coaches can only create rules over their own clients
        raw["scope"] = RuleScope.coach
        raw["owner_id"] = current_user.id
    definition = _validated("new", raw)

    rule = AutomationRule()
    _apply(rule, definition)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info(f"Automation rule {rule.id} ({rule.trigger_type}) created by {current_user.id}")
    return rule


@router.patch("/rules/{rule_id}", response_model=RuleOut)
def update_rule(
    rule_id: str,
    payload: RuleUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    rule = _get_rule(db, rule_id, current_user)
    raw = rule_to_mapping(rule)
    raw.update(payload.model_dump(exclude_unset=True))
    definition = _validated(rule_id, raw)
    _apply(rule, definition)
    db.commit()
    db.refresh(rule)
    return rule


@router.delete("/rules/{rule_id}")
def disable_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    """Soft delete: the rule stops running, its state and audit rows stay."""
    rule = _get_rule(db, rule_id, current_user)
    rule.enabled = False
    db.commit()
    return {"disabled": True, "rule_id": rule_id}


@router.post("/rules/{rule_id}/mute", response_model=StateOut)
def mute_user(
    rule_id: str,
    payload: MuteRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    rule = _get_rule(db, rule_id, current_user)
    if not db.query(User).filter(User.id == payload.user_id).first():
        raise NotFoundException("User", payload.user_id)
    definition = _validated(rule.id, rule_to_mapping(rule))
    if not UserDirectory(db).in_scope(definition).filter(User.id == payload.user_id).first():
        raise ForbiddenException("User is not in this rule's audience")
    return StateStore(db).mute(rule_id, payload.user_id, payload.until, utc_now_naive())


@router.delete("/rules/{rule_id}/mute/{user_id}", response_model=StateOut)
def unmute_user(
    rule_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    _get_rule(db, rule_id, current_user)
    state = StateStore(db).unmute(rule_id, user_id, utc_now_naive())
    if state is None:
        raise NotFoundException("Automation state", f"{rule_id}/{user_id}")
    return state


@router.get("/rules/{rule_id}/at-risk", response_model=List[StateOut])
def at_risk_users(
    rule_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    _get_rule(db, rule_id, current_user)
    return StateStore(db).at_risk(rule_id)


@router.get("/rules/{rule_id}/logs", response_model=List[LogOut])
def rule_logs(
    rule_id: str,
    user_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    _get_rule(db, rule_id, current_user)
    return AuditLog(db).for_rule(rule_id, user_id=user_id, limit=limit)


@router.get("/users/{user_id}/states", response_model=List[StateOut])
def user_states(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_coach_or_admin)
):
    states = StateStore(db).for_user(user_id)
    if _is_admin(current_user):
        return states
    own_rules = {
        rid for (rid,) in db.query(AutomationRule.id).filter(AutomationRule.owner_id == current_user.id)
    }
    return [s for s in states if s.rule_id in own_rules]
