"""
Behavioral Automation Engine

Periodic batch that watches engagement signals, moves each (rule, user)
pair through a staged state machine and sends templated interventions
once per forward transition, subject to cooldowns, lifetime caps and
manual mutes.

Configuration (see app.core.settings):
- AUTOMATION_RULE_WORKERS: rules evaluated in parallel (default: 4)
- AUTOMATION_RUN_TIMEOUT_SECONDS: soft deadline for one pass (default: 600)
- AUTOMATION_EVENT_WINDOW_MINUTES: look-back for lifecycle events (default: 30)
- AUTOMATION_LEASE_SECONDS: run-lock lease length (default: 900)
- AUTOMATION_PUSH_ENABLED / AUTOMATION_EMAIL_ENABLED: channel toggles

Usage:
    from app.services.automation import run_automation_pass

    summary = run_automation_pass()
    print(summary.to_dict())

Extending:
    New trigger types subclass TriggerStrategy and are registered with
    @register_trigger; new signal sources subclass SignalSource and are
    registered with @register_signal.
"""

from app.services.automation.audience import (
    TRIGGER_REGISTRY,
    AudienceResolver,
    Candidate,
    TriggerStrategy,
    register_trigger,
)
from app.services.automation.context import RuleResult, RunContext, RunSummary
from app.services.automation.dispatch import CHANNEL_REGISTRY, Dispatcher, NotificationChannel
from app.services.automation.engine import AutomationEngine, run_automation_pass
from app.services.automation.rules import LoadedRule, load_rules, validate_rule_definition
from app.services.automation.signals import SIGNAL_REGISTRY, SignalAggregator, SignalSource, register_signal
from app.services.automation.templates import PlaceholderRenderer, TemplateRenderer

__all__ = [
    "run_automation_pass",
    "AutomationEngine",
    "RunContext",
    "RunSummary",
    "RuleResult",
    "AudienceResolver",
    "Candidate",
    "TriggerStrategy",
    "TRIGGER_REGISTRY",
    "register_trigger",
    "SignalAggregator",
    "SignalSource",
    "SIGNAL_REGISTRY",
    "register_signal",
    "Dispatcher",
    "NotificationChannel",
    "CHANNEL_REGISTRY",
    "TemplateRenderer",
    "PlaceholderRenderer",
    "LoadedRule",
    "load_rules",
    "validate_rule_definition",
]
