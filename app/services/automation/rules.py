"""Rule Store access: load enabled rules and validate them into typed definitions.

A rule whose stored config doesn't validate is quarantined here, before
any user is touched, instead of failing halfway through a batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Tuple

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import RuleConfigError, RuleStoreUnavailable, UnknownTriggerError
from app.models.automation import AutomationRule
from app.schemas.automation import RuleDefinition
from app.services.automation.audience import TRIGGER_REGISTRY, TriggerStrategy

logger = logging.getLogger(__name__)

_RULE_FIELDS = (
    "name", "scope", "owner_id", "enabled", "priority", "trigger_type", "trigger_config",
    "target_audience", "audience_filters", "signals_enabled", "stages", "channels",
    "required_channels", "message_subject", "cooldown_days", "max_sends_per_user",
)


@dataclass(frozen=True)
class LoadedRule:
    id: str
    definition: RuleDefinition
    trigger_config: BaseModel
    strategy: TriggerStrategy

    @property
    def name(self) -> str:
        return self.definition.name


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def validate_rule_definition(rule_id: str, raw: dict) -> Tuple[RuleDefinition, BaseModel, TriggerStrategy]:
    """Validate a raw rule mapping; raises RuleConfigError describing the first problem set."""
    try:
        definition = RuleDefinition.model_validate(raw)
    except ValidationError as e:
        raise RuleConfigError(rule_id, _format_validation_error(e)) from e

    strategy = TRIGGER_REGISTRY.get(definition.trigger_type)
    if strategy is None:
        raise UnknownTriggerError(rule_id, definition.trigger_type)

    try:
        trigger_config = strategy.validate(definition)
    except ValidationError as e:
        raise RuleConfigError(rule_id, f"trigger_config: {_format_validation_error(e)}") from e
    except ValueError as e:
        raise RuleConfigError(rule_id, str(e)) from e
    return definition, trigger_config, strategy


def rule_to_mapping(rule: AutomationRule) -> dict:
    return {name: getattr(rule, name) for name in _RULE_FIELDS}


def load_rules(db: Session) -> Tuple[List[LoadedRule], List[RuleConfigError]]:
    """Enabled rules, highest priority first, plus the ones that were quarantined.

    Raises RuleStoreUnavailable if the rule table can't be read.
    """
    try:
        rows = db.query(AutomationRule).filter(
            AutomationRule.enabled.is_(True)
        ).order_by(AutomationRule.priority.desc(), AutomationRule.created_at).all()
        raw_rules = [(row.id, rule_to_mapping(row)) for row in rows]
    except SQLAlchemyError as e:
        logger.error(f"[automation] Could not read rule store: {e}")
        raise RuleStoreUnavailable(str(e)) from e

    loaded, quarantined = [], []
    for rule_id, raw in raw_rules:
        try:
            definition, trigger_config, strategy = validate_rule_definition(rule_id, raw)
        except RuleConfigError as e:
            logger.warning(f"[automation] Quarantined {e}")
            quarantined.append(e)
            continue
        loaded.append(LoadedRule(rule_id, definition, trigger_config, strategy))
    return loaded, quarantined
