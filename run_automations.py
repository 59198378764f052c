#!/usr/bin/env python3
"""
Run one automation evaluation pass from the command line.

Usage examples:
    # Run every enabled rule now (same as the scheduler endpoint)
    python run_automations.py

    # Evaluate rules one at a time
    python run_automations.py --workers 1

    # Replay a pass as of a fixed instant (UTC)
    python run_automations.py --now 2026-10-01T09:00:00

    # List the rules that would run and any that fail validation
    python run_automations.py --check

Environment:
    DATABASE_URL - PostgreSQL connection string (required)

Exit status is 0 on success, 1 if any rule failed or was quarantined,
2 if the rule store could not be read, 3 if another pass held the lock.
"""

import argparse
import json
import os
import sys
from datetime import datetime

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv

load_dotenv()

from app.core.logging_config import setup_logging
from app.db import SessionLocal
from app.exceptions import RuleStoreUnavailable
from app.services.automation import load_rules, run_automation_pass


def check_rules():
    """Print loadable and quarantined rules without evaluating anyone."""
    db = SessionLocal()
    try:
        rules, quarantined = load_rules(db)
    finally:
        db.close()

    print(f"{len(rules)} enabled rule(s) will run:")
    for rule in rules:
        d = rule.definition
        print(f"  [{d.priority:>3}] {rule.id}  {d.name}  ({d.trigger_type}, {len(d.stages)} stage(s))")
    if quarantined:
        print(f"\n{len(quarantined)} rule(s) quarantined:")
        for error in quarantined:
            print(f"  {error.rule_id}: {error.detail}")
    return 1 if quarantined else 0


def main():
    parser = argparse.ArgumentParser(description="Run one automation evaluation pass")
    parser.add_argument("--workers", type=int, help="Rules evaluated in parallel (overrides AUTOMATION_RULE_WORKERS)")
    parser.add_argument("--timeout", type=int, help="Soft deadline in seconds")
    parser.add_argument("--now", type=datetime.fromisoformat, help="Evaluate as of this UTC instant (ISO 8601)")
    parser.add_argument("--check", action="store_true", help="Validate rules only; send nothing")
    args = parser.parse_args()

    setup_logging()

    try:
        if args.check:
            return check_rules()
        summary = run_automation_pass(
            SessionLocal,
            now=args.now,
            max_workers=args.workers,
            timeout_seconds=args.timeout,
        )
    except RuleStoreUnavailable as e:
        print(f"ERROR: rule store unavailable: {e}", file=sys.stderr)
        return 2

    print(json.dumps(summary.to_dict(), indent=2))
    if summary.locked:
        return 3
    if summary.failed_rules or summary.quarantined_rules:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
