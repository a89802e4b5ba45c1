"""Timer-driven job that settles pending ticket legs."""

from __future__ import annotations

import argparse
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db import build_engine, build_session_factory, init_db
from app.domain import EvidenceRecord, JudgeVerdict
from app.models import Leg, LegStatus, Ticket, TicketStatus
from app.repositories import SettlementRepository
from app.schemas import LegBrief, TicketAudit
from app.services.judge import LLMJudge
from feeds.client import OddsApiScoresClient
from feeds.research import TavilyResearchClient, build_results_query
from feeds.service import EvidenceCollector, EvidenceIndex, ScoresSource

from .context import RunContext
from .errors import (
    EventInProgress,
    JudgeContractViolation,
    NoMatchFound,
    PersistenceFailure,
    ResearchUnavailable,
)
from .evaluator import evaluate
from .policy import SettlementPolicy
from .propagation import StatePropagator
from .scheduler import select_audit_tickets, select_candidates


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SettlementSummary:
    run_id: str
    policy: str
    candidates: int = 0
    checked_legs: int = 0
    settled: dict[str, int] = field(default_factory=dict)
    left_pending: int = 0
    no_evidence: int = 0
    in_progress: int = 0
    judge_failures: int = 0
    persistence_failures: int = 0
    skipped_legs: int = 0
    audited_tickets: int = 0
    reconciled_tickets: int = 0
    failed_competitions: list[str] = field(default_factory=list)
    unknown_competitions: list[str] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def record_settled(self, status: LegStatus) -> None:
        self.settled[status.value] = self.settled.get(status.value, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "policy": self.policy,
            "candidates": self.candidates,
            "checked_legs": self.checked_legs,
            "settled": dict(self.settled),
            "left_pending": self.left_pending,
            "no_evidence": self.no_evidence,
            "in_progress": self.in_progress,
            "judge_failures": self.judge_failures,
            "persistence_failures": self.persistence_failures,
            "skipped_legs": self.skipped_legs,
            "audited_tickets": self.audited_tickets,
            "reconciled_tickets": self.reconciled_tickets,
            "failed_competitions": list(self.failed_competitions),
            "unknown_competitions": list(self.unknown_competitions),
            "failures": list(self.failures),
        }


class SettlementPipeline:
    """Run one settlement pass under a :class:`SettlementPolicy`.

    A pass reads its candidates, fetches scores once per competition, resolves
    each leg (rules first, judge second) and writes leg and ticket state as
    separate units of work. Failures of a single competition, leg or ticket are
    recorded and skipped; only failing to read the candidates aborts the pass.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: sessionmaker[Session],
        scores_client: ScoresSource,
        judge: LLMJudge,
        research_client: TavilyResearchClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self._collector = EvidenceCollector(settings, scores_client)
        self._judge = judge
        self._research = research_client
        self._clock = clock
        self._sleep = sleep

    def run(self, policy: SettlementPolicy | None = None) -> SettlementSummary:
        policy = policy or SettlementPolicy.primary(self.settings)
        run_id = uuid4().hex[:12]
        summary = SettlementSummary(run_id=run_id, policy=policy.name)
        session = self._session_factory()
        try:
            repo = SettlementRepository(session)
            context = RunContext(
                run_id=run_id,
                now=self._clock(),
                policy=policy,
                settings=self.settings,
                session=session,
                repo=repo,
                propagator=StatePropagator(repo),
            )
            logger.info(
                "Starting settlement pass run={} policy={} now={}",
                run_id,
                policy.name,
                context.now.isoformat(),
            )
            self._reconcile_tickets(context, summary)
            if policy.ticket_level_judge:
                self._run_audit(context, summary)
            else:
                self._run_primary(context, summary)
            self._reconcile_tickets(context, summary)
        finally:
            session.close()

        logger.info(
            "Settlement pass finished run={} policy={} checked={} settled={} pending={} failures={}",
            run_id,
            policy.name,
            summary.checked_legs,
            summary.settled,
            summary.left_pending,
            len(summary.failures),
        )
        return summary

    # ------------------------------------------------------------------
    # Primary pass

    def _run_primary(self, context: RunContext, summary: SettlementSummary) -> None:
        starts_after = context.now - timedelta(days=context.policy.window_days)
        try:
            legs = context.repo.pending_legs_of_live_tickets(starts_after=starts_after)
        except SQLAlchemyError:
            logger.exception("Failed to load pending legs run={}", context.run_id)
            raise

        candidates = select_candidates(
            legs, now=context.now, settings=context.settings, policy=context.policy
        )
        summary.candidates = len(candidates)
        if not candidates:
            logger.info("No legs due for review run={}", context.run_id)
            return

        evidence = self._collect(candidates, summary)
        previous_ticket_id: int | None = None
        for leg in candidates:
            if (
                previous_ticket_id is not None
                and leg.ticket_id != previous_ticket_id
                and context.policy.ticket_delay_seconds
            ):
                self._sleep(context.policy.ticket_delay_seconds)
            previous_ticket_id = leg.ticket_id
            try:
                self._settle_leg(context, leg, evidence, summary)
            except PersistenceFailure as exc:
                summary.persistence_failures += 1
                summary.failures.append({"leg_id": leg.id, "reason": str(exc)})
                logger.warning("Abandoning leg {}: {}", leg.id, exc)

    def _settle_leg(
        self,
        context: RunContext,
        leg: Leg,
        evidence: EvidenceIndex,
        summary: SettlementSummary,
    ) -> None:
        if leg.ticket.status != TicketStatus.PENDING.value:
            # Another leg of this ticket lost earlier in the pass.
            summary.skipped_legs += 1
            return
        if evidence.competition_failed(leg.competition):
            summary.skipped_legs += 1
            return

        summary.checked_legs += 1
        try:
            record = evidence.require_completed(leg.matchup)
        except NoMatchFound:
            logger.info("No feed match for {}", leg.matchup)
            summary.no_evidence += 1
            self._write_check(context, leg, increment=True)
            return
        except EventInProgress:
            found = evidence.lookup(leg.matchup)
            logger.info(
                "In progress / not started: {} [{}]",
                leg.matchup,
                found.score.label if found else "?",
            )
            summary.in_progress += 1
            self._write_check(context, leg, increment=False)
            return

        logger.info("Evaluating {} [{}] selection='{}'", leg.matchup, record.score.label, leg.selection)
        status = self._resolve_leg(leg, record, summary)
        if status is None:
            self._write_check(context, leg, increment=True)
            return
        self._write_outcome(context, leg, status, record.score.label, summary)

    def _resolve_leg(
        self, leg: Leg, record: EvidenceRecord, summary: SettlementSummary
    ) -> LegStatus | None:
        status = evaluate(leg.selection, record.score)
        if status is not None:
            return status
        try:
            verdict = self._judge.judge_leg(
                matchup=record.matchup,
                final_score=record.score,
                selection=leg.selection,
            )
        except JudgeContractViolation as exc:
            summary.judge_failures += 1
            summary.failures.append({"leg_id": leg.id, "reason": str(exc)})
            logger.warning("Judge could not settle leg {}: {}", leg.id, exc)
            return None
        return LegStatus(verdict.value.lower())

    # ------------------------------------------------------------------
    # Audit sweep

    def _run_audit(self, context: RunContext, summary: SettlementSummary) -> None:
        created_since = (context.now - timedelta(days=context.policy.window_days)).date()
        try:
            tickets = context.repo.audit_tickets(
                created_since=created_since,
                include_lost=context.policy.include_dead_tickets,
            )
        except SQLAlchemyError:
            logger.exception("Failed to load audit tickets run={}", context.run_id)
            raise

        tickets = select_audit_tickets(
            tickets, now=context.now, grace_hours=context.policy.grace_hours
        )
        pending_legs = [
            leg
            for ticket in tickets
            for leg in ticket.legs
            if leg.status == LegStatus.PENDING.value
        ]
        summary.candidates = len(pending_legs)
        if not tickets:
            logger.info("No tickets to audit run={}", context.run_id)
            return

        logger.info("Auditing {} tickets ({} pending legs)", len(tickets), len(pending_legs))
        evidence = self._collect(pending_legs, summary)
        for position, ticket in enumerate(tickets):
            if position and context.policy.ticket_delay_seconds:
                self._sleep(context.policy.ticket_delay_seconds)
            summary.audited_tickets += 1
            try:
                self._audit_ticket(context, ticket, evidence, summary)
            except PersistenceFailure as exc:
                summary.persistence_failures += 1
                summary.failures.append({"ticket_id": ticket.id, "reason": str(exc)})
                logger.warning("Abandoning audit of ticket #{}: {}", ticket.id, exc)

    def _audit_ticket(
        self,
        context: RunContext,
        ticket: Ticket,
        evidence: EvidenceIndex,
        summary: SettlementSummary,
    ) -> None:
        legs = list(ticket.legs)
        pending = [leg for leg in legs if leg.status == LegStatus.PENDING.value]
        decisions: dict[int, tuple[LegStatus, str | None]] = {}
        missing_feed_data = False

        lines = ["OFFICIAL RESULTS (HIGHEST PRIORITY):"]
        for leg in legs:
            record = evidence.lookup(leg.matchup)
            if record is None:
                lines.append(f"- {leg.matchup}: NOT FOUND IN OFFICIAL FEED.")
                if leg.status == LegStatus.PENDING.value:
                    missing_feed_data = True
                continue
            lines.append(f"- {leg.matchup}: {record.score.label} (Status: {record.state_label})")
            if leg.status == LegStatus.PENDING.value and record.completed:
                status = evaluate(leg.selection, record.score)
                if status is not None:
                    decisions[leg.id] = (status, record.score.label)

        unresolved = [leg for leg in pending if leg.id not in decisions]
        pending_ids: set[int] = set()
        if unresolved:
            if missing_feed_data and context.policy.research_enabled:
                research = self._research_text(ticket)
                if research:
                    lines.append("")
                    lines.append("WEB RESULTS (SECONDARY):")
                    lines.append(research)
            try:
                audit = self._judge.audit_ticket(
                    [LegBrief.model_validate(leg) for leg in unresolved],
                    "\n".join(lines),
                )
                judged, pending_ids = self._split_audit(context, audit)
            except JudgeContractViolation as exc:
                summary.judge_failures += 1
                summary.failures.append({"ticket_id": ticket.id, "reason": str(exc)})
                logger.warning("Judge audit failed for ticket #{}: {}", ticket.id, exc)
                for leg in unresolved:
                    summary.checked_legs += 1
                    self._write_check(context, leg, increment=True)
            else:
                decisions.update(judged)

        for leg in pending:
            if leg.id in decisions:
                summary.checked_legs += 1
                status, result = decisions[leg.id]
                self._write_outcome(context, leg, status, result, summary)
            elif leg.id in pending_ids:
                summary.checked_legs += 1
                summary.left_pending += 1
                logger.info("Leg {} ({}) stays PENDING for a later pass", leg.id, leg.matchup)
                self._write_check(context, leg, increment=False)

    def _split_audit(
        self, context: RunContext, audit: TicketAudit
    ) -> tuple[dict[int, tuple[LegStatus, str | None]], set[int]]:
        if audit.summary:
            logger.info("Audit summary: {}", audit.summary)
        judged: dict[int, tuple[LegStatus, str | None]] = {}
        pending_ids: set[int] = set()
        for leg_audit in audit.legs:
            verdict = JudgeVerdict(leg_audit.status)
            if verdict is JudgeVerdict.PENDING:
                if not context.policy.pending_is_terminal:
                    raise JudgeContractViolation(
                        f"judge left leg {leg_audit.id} PENDING in a pass that requires a verdict"
                    )
                pending_ids.add(leg_audit.id)
                continue
            judged[leg_audit.id] = (
                LegStatus(verdict.value.lower()),
                leg_audit.final_score or None,
            )
        return judged, pending_ids

    def _research_text(self, ticket: Ticket) -> str | None:
        if self._research is None:
            return None
        query = build_results_query(ticket.legs, ticket.created_on)
        try:
            return self._research.search(query) or None
        except ResearchUnavailable as exc:
            logger.warning("Research unavailable for ticket #{}: {}", ticket.id, exc)
            return None

    # ------------------------------------------------------------------
    # Shared helpers

    def _collect(self, legs: list[Leg], summary: SettlementSummary) -> EvidenceIndex:
        evidence = self._collector.collect(leg.competition for leg in legs)
        summary.failed_competitions = sorted(evidence.failed_competitions)
        summary.unknown_competitions = sorted(evidence.unknown_competitions)
        return evidence

    def _commit(self, context: RunContext, description: str) -> None:
        try:
            context.session.commit()
        except SQLAlchemyError as exc:
            context.session.rollback()
            logger.exception("Write failed run={} unit={}", context.run_id, description)
            raise PersistenceFailure(f"{description}: {exc.__class__.__name__}") from exc

    def _write_check(self, context: RunContext, leg: Leg, *, increment: bool) -> None:
        try:
            context.repo.record_check(leg, checked_at=context.now, increment=increment)
        except SQLAlchemyError as exc:
            context.session.rollback()
            raise PersistenceFailure(f"leg {leg.id} check: {exc.__class__.__name__}") from exc
        self._commit(context, f"leg {leg.id} check")

    def _write_outcome(
        self,
        context: RunContext,
        leg: Leg,
        status: LegStatus,
        result: str | None,
        summary: SettlementSummary,
    ) -> None:
        ticket_id = leg.ticket_id
        try:
            context.repo.record_outcome(
                leg, status=status, result=result, checked_at=context.now
            )
        except SQLAlchemyError as exc:
            context.session.rollback()
            raise PersistenceFailure(f"leg {leg.id} outcome: {exc.__class__.__name__}") from exc
        self._commit(context, f"leg {leg.id} outcome")
        summary.record_settled(status)
        logger.info("Leg {} ({}) settled {} [{}]", leg.id, leg.matchup, status.value.upper(), result)

        # Leg and ticket are written separately; a failed ticket write is healed
        # by the reconciliation at the start of the next pass.
        try:
            context.propagator.apply(leg)
        except SQLAlchemyError as exc:
            context.session.rollback()
            raise PersistenceFailure(
                f"ticket {ticket_id} update: {exc.__class__.__name__}"
            ) from exc
        self._commit(context, f"ticket {ticket_id} update")

    def _reconcile_tickets(self, context: RunContext, summary: SettlementSummary) -> None:
        try:
            ticket_ids = context.repo.inconsistent_ticket_ids()
        except SQLAlchemyError:
            context.session.rollback()
            logger.exception("Failed to scan tickets for reconciliation run={}", context.run_id)
            return
        for ticket_id in ticket_ids:
            try:
                context.propagator.reconcile(ticket_id)
                self._commit(context, f"ticket {ticket_id} reconcile")
            except SQLAlchemyError as exc:
                context.session.rollback()
                summary.persistence_failures += 1
                logger.warning("Reconcile of ticket #{} failed: {}", ticket_id, exc)
                continue
            except PersistenceFailure:
                summary.persistence_failures += 1
                continue
            summary.reconciled_tickets += 1
        if ticket_ids:
            logger.info("Reconciled {} tickets run={}", summary.reconciled_tickets, context.run_id)


def build_pipeline(settings: Settings) -> tuple[SettlementPipeline, list[Any]]:
    """Wire the production collaborators; returns the pipeline and closables."""

    engine = build_engine(settings)
    init_db(engine)
    session_factory = build_session_factory(engine)
    scores_client = OddsApiScoresClient(
        api_key=settings.odds_api_key or "",
        base_url=str(settings.odds_api_base_url),
        days_from=settings.scores_days_from,
        timeout=settings.odds_api_timeout_seconds,
    )
    closables: list[Any] = [scores_client]
    research_client = None
    if settings.tavily_api_key:
        research_client = TavilyResearchClient(
            api_key=settings.tavily_api_key,
            url=str(settings.tavily_api_url),
            max_results=settings.research_max_results,
        )
        closables.append(research_client)
    pipeline = SettlementPipeline(
        settings,
        session_factory=session_factory,
        scores_client=scores_client,
        judge=LLMJudge(settings),
        research_client=research_client,
    )
    return pipeline, closables


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Settle pending ticket legs that are due for review",
    )
    parser.add_argument(
        "--audit",
        action="store_true",
        help="Run the wide audit sweep instead of the timer-driven pass",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args(argv)


def _write_summary(summary: SettlementSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Settlement summary written to {}", path)


def run_job(*, audit: bool = False, summary_path: Path | None = None) -> SettlementSummary:
    settings = get_settings()
    pipeline, closables = build_pipeline(settings)
    policy = SettlementPolicy.audit(settings) if audit else SettlementPolicy.primary(settings)
    try:
        summary = pipeline.run(policy)
    finally:
        for closable in closables:
            closable.close()

    if summary_path:
        _write_summary(summary, summary_path)
    return summary


def main(argv: list[str] | None = None) -> SettlementSummary:
    args = _parse_args(argv)
    return run_job(audit=args.audit, summary_path=args.summary_path)


if __name__ == "__main__":
    main()
