"""Shared constants for the automation tests."""
from datetime import datetime

# A Monday; every engine test evaluates relative to this instant
NOW = datetime(2026, 10, 5, 9, 0, 0)

DROPOFF_STAGES = [
    {"threshold_days": 3, "action_kind": "auto_message", "tone": "supportive"},
    {"threshold_days": 7, "action_kind": "alert_only"},
    {"threshold_days": 14, "action_kind": "alert_only"},
]
