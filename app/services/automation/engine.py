"""The automation run: rules in parallel, users one at a time.

Per user: mute check -> signal aggregation -> stage classification ->
transition -> cooldown/cap -> render -> dispatch -> audit. Each user's
writes are committed before the next user starts, so a run cut short
leaves only complete per-user outcomes behind.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.exceptions import AutomationError
from app.models.automation import ActionKind, LogStatus, RuleScope
from app.schemas.automation import StageConfig
from app.services import audit
from app.services.automation.audience import AudienceResolver, Candidate
from app.services.automation.audit_log import AuditLog
from app.services.automation.context import RuleResult, RunContext, RunSummary
from app.services.automation.dispatch import Delivery, Dispatcher, NotificationChannel
from app.services.automation.lease import RunLease
from app.services.automation.rules import LoadedRule, load_rules
from app.services.automation.signals import SignalAggregator
from app.services.automation.stages import Transition, classify, decide
from app.services.automation.state import StateStore
from app.services.automation.templates import (
    ESCALATION_TEMPLATE,
    PlaceholderRenderer,
    TemplateRenderer,
    build_variables,
    resolve_template,
)
from app.services.automation.throttle import CooldownCapController
from app.utils.datetime import elapsed_days, utc_now_naive

logger = logging.getLogger("app.automation")

_NOTIFICATION_TYPES = {
    ActionKind.auto_message: "automation",
    ActionKind.alert_only: "automation_alert",
    ActionKind.assisted: "automation_escalation",
}

# Per-user outcomes that aren't audit statuses
MUTED = "muted"
NOOP = "noop"
RECOVERED = "recovered"


class RuleEvaluator:
    """Evaluates every candidate of one rule on one session."""

    def __init__(self, db: Session, rule: LoadedRule, ctx: RunContext,
                 renderer: TemplateRenderer, channels: Optional[Dict[str, NotificationChannel]] = None):
        self.db = db
        self.rule = rule
        self.definition = rule.definition
        self.ctx = ctx
        self.renderer = renderer
        self.resolver = AudienceResolver(db)
        self.signals = SignalAggregator(db)
        self.states = StateStore(db)
        self.audit_log = AuditLog(db)
        self.throttle = CooldownCapController(self.audit_log)
        self.dispatcher = Dispatcher(db, channels)

    def run(self, result: RuleResult) -> None:
        seen = set()
        for candidate in self.resolver.resolve(self.rule, self.ctx.now, self.ctx.event_window):
            if self.ctx.should_stop():
                result.aborted = True
                logger.warning(f"[automation] Rule {self.rule.id} stopped early after {result.processed} users")
                return
            seen.add(candidate.user_id)
            result.processed += 1
            self._tally(result, self.evaluate_user(candidate))

        # Inactivity stages only fall back to 0 on renewed signal activity
        if self.rule.strategy.measures_inactivity:
            return

        # Users who left the audience no longer meet the condition
        recovered = self.states.recover_absent(self.rule.id, seen, self.ctx.now)
        for user_id, previous in recovered:
            audit.log_stage_transition(self.ctx.run_id, self.rule.id, user_id, previous, 0, Transition.RECOVERY.value)
        result.recovered += len(recovered)

    @staticmethod
    def _tally(result: RuleResult, outcome: str) -> None:
        if outcome == LogStatus.sent.value:
            result.sent += 1
        elif outcome == LogStatus.skipped.value:
            result.skipped += 1
        elif outcome == LogStatus.failed.value:
            result.failed += 1
        elif outcome == MUTED:
            result.muted += 1
        elif outcome == RECOVERED:
            result.recovered += 1

    def evaluate_user(self, candidate: Candidate) -> str:
        """Evaluate one user; any error stays with this user and is audited as failed."""
        try:
            return self._evaluate(candidate)
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"[automation] Rule {self.rule.id} failed for user {candidate.user_id}: {e}", exc_info=True
            )
            self._record_failure(candidate.user_id, str(e))
            return LogStatus.failed.value

    def _record_failure(self, user_id: str, reason: str) -> None:
        try:
            self.audit_log.record(self.rule.id, user_id, LogStatus.failed, self.ctx.now, reason=reason[:500])
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[automation] Could not write failure audit row for user {user_id}: {e}")
        audit.log_action(self.ctx.run_id, self.rule.id, user_id, None, None, LogStatus.failed.value, reason)

    def _evaluate(self, candidate: Candidate) -> str:
        now = self.ctx.now
        user_id = candidate.user_id
        state = self.states.load(self.rule.id, user_id, now)
        if state.is_muted(now):
            return MUTED

        elapsed = 0
        if self.rule.strategy.measures_inactivity:
            last_activity = self.signals.last_activity(
                user_id,
                self.definition.signals_enabled,
                now=now,
                lookback_days=getattr(self.rule.trigger_config, "lookback_days", None),
            )
            elapsed = elapsed_days(now, last_activity)

        current = state.current_stage
        new_stage = classify(elapsed, self.definition.thresholds)
        transition = decide(current, new_stage)

        if transition == Transition.NOOP:
            return NOOP

        if transition == Transition.RECOVERY:
            self.states.reset(state, now)
            self.db.commit()
            audit.log_stage_transition(self.ctx.run_id, self.rule.id, user_id, current, 0, transition.value)
            return RECOVERED

        if transition == Transition.INVALID_DECREASE:
            reason = f"invalid stage decrease {current} -> {new_stage}"
            if self.audit_log.has_failure(self.rule.id, user_id, new_stage, reason, since=state.updated_at):
                logger.warning(f"[automation] Rule {self.rule.id} user {user_id}: {reason} (already recorded)")
                return NOOP
            logger.error(f"[automation] Rule {self.rule.id} user {user_id}: {reason}; state left at {current}")
            self.audit_log.record(self.rule.id, user_id, LogStatus.failed, now, stage=new_stage, reason=reason)
            self.db.commit()
            audit.log_action(self.ctx.run_id, self.rule.id, user_id, None, new_stage, LogStatus.failed.value, reason)
            return LogStatus.failed.value

        # Forward: the stage is persisted whatever happens to the action
        self.states.advance(state, new_stage, now)
        self.db.commit()
        audit.log_stage_transition(self.ctx.run_id, self.rule.id, user_id, current, new_stage, transition.value)

        stage = self.definition.stages[new_stage - 1]
        kind = ActionKind(stage.action_kind)
        verdict = self.throttle.check(self.rule.id, self.definition, user_id, now)
        if not verdict.allowed:
            self.audit_log.record(
                self.rule.id, user_id, LogStatus.skipped, now,
                action_kind=kind.value, stage=new_stage, reason=verdict.reason,
            )
            self.db.commit()
            audit.log_action(self.ctx.run_id, self.rule.id, user_id, kind.value, new_stage,
                             LogStatus.skipped.value, verdict.reason)
            return LogStatus.skipped.value

        variables = build_variables(
            candidate, now, elapsed if self.rule.strategy.measures_inactivity else None
        )
        rendered, deliveries = self._prepare(candidate, stage, new_stage, variables)
        outcome = self.dispatcher.dispatch(deliveries, self.definition.channels, self.definition.primary_channels)

        if outcome.status == LogStatus.sent:
            self.states.stamp_action(state, kind, now)
        self.audit_log.record(
            self.rule.id, user_id, outcome.status, now,
            action_kind=kind.value,
            stage=new_stage,
            rendered_message=rendered,
            reason=outcome.reason,
            channel_results=outcome.channel_results,
        )
        self.db.commit()
        audit.log_action(self.ctx.run_id, self.rule.id, user_id, kind.value, new_stage,
                         outcome.status.value, outcome.reason)
        return outcome.status.value

    def _alert_recipients(self) -> List:
        directory = self.resolver.directory
        if self.definition.scope == RuleScope.coach:
            owner = directory.get(self.definition.owner_id)
            return [owner] if owner is not None else []
        return directory.admins()

    def _prepare(self, candidate: Candidate, stage: StageConfig, stage_number: int, variables: dict):
        """Render the stage's text and build one Delivery per recipient."""
        kind = ActionKind(stage.action_kind)
        body = self.renderer.render(resolve_template(stage), variables)
        data = {"rule_id": self.rule.id, "user_id": candidate.user_id, "stage": stage_number}
        notification_type = _NOTIFICATION_TYPES[kind]

        if kind == ActionKind.auto_message:
            sender_id = self.definition.owner_id if self.definition.scope == RuleScope.coach else None
            delivery = Delivery(
                recipient_id=candidate.user_id,
                recipient_email=candidate.email,
                recipient_name=variables["display_name"],
                title=self.definition.message_subject or settings.automation_app_name,
                body=body,
                notification_type=notification_type,
                data=data,
                sender_id=sender_id,
            )
            return body, [delivery]

        title = self.definition.message_subject or f"{variables['display_name']} needs attention"
        if kind == ActionKind.assisted:
            header = self.renderer.render(ESCALATION_TEMPLATE, variables)
            alert_body = f"{header}\n\n{body}"
            data["suggested_message"] = body
        else:
            alert_body = body

        deliveries = [
            Delivery(
                recipient_id=recipient.id,
                recipient_email=recipient.email,
                recipient_name=recipient.name,
                title=title,
                body=alert_body,
                notification_type=notification_type,
                data=dict(data),
            )
            for recipient in self._alert_recipients()
        ]
        return body, deliveries


class AutomationEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        renderer: Optional[TemplateRenderer] = None,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        max_workers: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.renderer = renderer or PlaceholderRenderer()
        self.channels = channels
        self.max_workers = max_workers or settings.automation_rule_workers

    def evaluate_rule(self, rule: LoadedRule, ctx: RunContext) -> Optional[RuleResult]:
        """Run one rule on its own session. Returns None if the run was stopped before it started."""
        if ctx.should_stop():
            return None
        result = RuleResult(rule.id)
        db = self.session_factory()
        try:
            RuleEvaluator(db, rule, ctx, self.renderer, self.channels).run(result)
        except AutomationError as e:
            db.rollback()
            result.error = str(e)
            logger.error(f"[automation] Rule {rule.id} ({rule.name}) aborted: {e}")
            audit.log_rule_failed(ctx.run_id, rule.id, str(e))
        except Exception as e:  # rule boundary: never let one rule take the run down
            db.rollback()
            result.error = str(e)
            logger.exception(f"[automation] Rule {rule.id} ({rule.name}) crashed: {e}")
            audit.log_rule_failed(ctx.run_id, rule.id, str(e))
        finally:
            db.close()
        return result

    def run(self, ctx: Optional[RunContext] = None) -> RunSummary:
        ctx = ctx or RunContext.create()
        summary = RunSummary(run_id=ctx.run_id, started_at=utc_now_naive())

        lease = RunLease(self.session_factory, holder=ctx.run_id)
        if not lease.acquire():
            logger.warning(f"[automation] Run {ctx.run_id} skipped: another run holds the lease")
            summary.locked = True
            summary.finished_at = utc_now_naive()
            return summary

        try:
            db = self.session_factory()
            try:
                rules, quarantined = load_rules(db)
            finally:
                db.close()

            for error in quarantined:
                summary.quarantined_rules.append(error.rule_id)
                audit.log_rule_quarantined(ctx.run_id, error.rule_id, error.detail)
            audit.log_run_started(ctx.run_id, len(rules))

            for result in self._evaluate_all(rules, ctx):
                if result is None:
                    summary.aborted = True
                else:
                    summary.add(result)
        finally:
            lease.release()
            summary.finished_at = utc_now_naive()

        logger.info(
            f"[automation] Run {ctx.run_id} done: processed={summary.processed} sent={summary.sent} "
            f"skipped={summary.skipped} failed={summary.failed} muted={summary.muted} "
            f"recovered={summary.recovered} rules={summary.rules_evaluated}"
        )
        audit.log_run_finished(ctx.run_id, {
            "processed": summary.processed,
            "sent": summary.sent,
            "skipped": summary.skipped,
            "failed": summary.failed,
            "aborted": summary.aborted,
        })
        return summary

    def _evaluate_all(self, rules: List[LoadedRule], ctx: RunContext) -> List[Optional[RuleResult]]:
        workers = min(self.max_workers, len(rules))
        if workers <= 1:
            return [self.evaluate_rule(rule, ctx) for rule in rules]
        # Submitted in priority order; results keep that order
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="automation-rule") as pool:
            futures = [pool.submit(self.evaluate_rule, rule, ctx) for rule in rules]
            return [future.result() for future in futures]


def run_automation_pass(
    session_factory: Optional[Callable[[], Session]] = None,
    now: Optional[datetime] = None,
    max_workers: Optional[int] = None,
    timeout_seconds: Optional[int] = None,
    renderer: Optional[TemplateRenderer] = None,
    channels: Optional[Dict[str, NotificationChannel]] = None,
) -> RunSummary:
    """Run one evaluation pass over every enabled rule.

    Safe to call on every scheduler tick: unchanged users are no-ops and an
    overlapping call returns a ``locked`` summary without doing anything.
    Raises RuleStoreUnavailable if the rule set can't be read.
    """
    if session_factory is None:
        from app.db import get_session_factory
        session_factory = get_session_factory()
    ctx = RunContext.create(now=now, timeout_seconds=timeout_seconds)
    engine = AutomationEngine(session_factory, renderer=renderer, channels=channels, max_workers=max_workers)
    return engine.run(ctx)
