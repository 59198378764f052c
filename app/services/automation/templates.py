"""Message templates for automation actions.

Rendering is plain ``{placeholder}`` substitution behind the
TemplateRenderer interface. Unknown placeholders are left in the text
as written so a typo in a custom template never blocks a batch.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from app.models.automation import ActionKind
from app.schemas.automation import StageConfig, Tone
from app.utils.datetime import NEVER_ACTIVE, elapsed_days

FALLBACK_NAME = "there"

TONE_TEMPLATES: Dict[Tone, str] = {
    Tone.supportive: (
        "Hey {client_name}, just checking in on you! I noticed we haven't connected in a while. "
        "Remember, I'm here to support you - no pressure, just wanted to make sure you're doing okay. "
        "Let me know if there's anything I can help with!"
    ),
    Tone.motivational: (
        "Hey {client_name}! Missing your energy around here! Remember why you started this journey - "
        "you've got so much potential. Let's get back on track together! What do you say?"
    ),
    Tone.direct: (
        "Hi {client_name}, I noticed you haven't been active lately. I wanted to reach out and see if "
        "everything is okay. Let's chat about what's been going on and how we can get you back on track."
    ),
}

ALERT_TEMPLATE = "{client_name} needs attention: {days_inactive} days since their last activity."
ESCALATION_TEMPLATE = (
    "{client_name} may need a personal check-in ({days_inactive} days since their last activity). "
    "Suggested message:"
)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


class TemplateRenderer(ABC):
    @abstractmethod
    def render(self, template: str, variables: Mapping[str, Any]) -> str:
        ...


class PlaceholderRenderer(TemplateRenderer):
    """Replaces ``{name}`` with ``variables[name]``; anything unknown stays verbatim."""

    def render(self, template: str, variables: Mapping[str, Any]) -> str:
        def _sub(match: re.Match) -> str:
            key = match.group(1)
            if key in variables and variables[key] is not None:
                return str(variables[key])
            return match.group(0)

        return _PLACEHOLDER.sub(_sub, template)


def resolve_template(stage: StageConfig) -> str:
    """Pick the body text for a stage's action before substitution."""
    if stage.template:
        return stage.template
    if stage.action_kind == ActionKind.alert_only:
        return ALERT_TEMPLATE
    return TONE_TEMPLATES[stage.tone]


def build_variables(candidate, now: datetime, elapsed: Optional[float] = None) -> Dict[str, Any]:
    """Placeholder values for one candidate.

    ``elapsed`` is the inactivity measured by the signal aggregator; when
    the trigger doesn't measure inactivity the user's last profile update
    stands in. A never-active user reports their account age.
    """
    account_age = elapsed_days(now, candidate.created_at)
    if account_age == NEVER_ACTIVE:
        account_age = 0
    if elapsed is None:
        elapsed = elapsed_days(now, candidate.updated_at)
    days_inactive = account_age if elapsed == NEVER_ACTIVE else int(elapsed)

    full_name = " ".join(p for p in (candidate.first_name, candidate.last_name) if p)
    display_name = candidate.display_name or full_name or candidate.first_name or FALLBACK_NAME

    variables: Dict[str, Any] = {
        "first_name": candidate.first_name or FALLBACK_NAME,
        "last_name": candidate.last_name or "",
        "display_name": display_name,
        "client_name": display_name,
        "role": candidate.role,
        "account_age_days": account_age,
        "days_inactive": days_inactive,
    }
    for key, value in (candidate.metadata or {}).items():
        variables.setdefault(key, value)
    return variables
