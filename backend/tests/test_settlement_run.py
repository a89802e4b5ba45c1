from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy.exc import OperationalError

from app.domain import JudgeVerdict
from app.repositories import SettlementRepository
from pipelines.errors import EvidenceUnavailable, JudgeContractViolation
from pipelines.policy import SettlementPolicy
from pipelines.settlement_run import SettlementPipeline


def score_event(home: str, away: str, home_score: int, away_score: int, *, completed: bool = True):
    return {
        "id": f"{home}-{away}",
        "home_team": home,
        "away_team": away,
        "completed": completed,
        "commence_time": "2025-03-08T17:30:00Z",
        "scores": [
            {"name": home, "score": str(home_score)},
            {"name": away, "score": str(away_score)},
        ],
    }


class StubScores:
    def __init__(self, payloads: dict[str, Any]) -> None:
        self.payloads = payloads
        self.calls: list[str] = []

    def fetch_scores(self, sport_key: str) -> list[dict[str, Any]]:
        self.calls.append(sport_key)
        value = self.payloads.get(sport_key, [])
        if isinstance(value, Exception):
            raise value
        return value


class StubJudge:
    def __init__(self, verdicts: dict[str, Any] | None = None) -> None:
        self.verdicts = verdicts or {}
        self.calls: list[dict[str, Any]] = []

    def judge_leg(self, *, matchup, final_score, selection):
        self.calls.append({"matchup": matchup, "score": final_score.label, "selection": selection})
        outcome = self.verdicts.get(selection)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            raise JudgeContractViolation("judge replied 'MAYBE'")
        return outcome

    def audit_ticket(self, legs, evidence_text):  # pragma: no cover - not used by primary
        raise AssertionError("primary pass must not call the ticket judge")


@pytest.fixture
def pipeline_factory(test_settings, session_factory, now):
    def _build(scores: StubScores, judge: StubJudge | None = None, *, at=None) -> SettlementPipeline:
        return SettlementPipeline(
            test_settings,
            session_factory=session_factory,
            scores_client=scores,
            judge=judge or StubJudge(),
            clock=lambda: at or now,
            sleep=lambda _: None,
        )

    return _build


def test_winning_leg_settles_ticket(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket([{"selection": "Arsenal"}])
    scores = StubScores({"soccer_epl": [score_event("Arsenal", "Chelsea", 2, 1)]})

    summary = pipeline_factory(scores).run()

    ticket, legs = load_ticket(ticket_id)
    assert legs[0].status == "won"
    assert legs[0].result == "2-1"
    assert ticket.status == "won"
    assert summary.settled == {"won": 1}
    assert scores.calls == ["soccer_epl"]


def test_first_loss_kills_ticket_and_dequeues_other_legs(
    make_ticket, load_ticket, pipeline_factory, session_factory, test_settings, now
):
    ticket_id = make_ticket(
        [
            {"matchup": "Spurs vs Everton", "selection": "Spurs", "starts_at": now - timedelta(hours=1)},
            {"matchup": "Arsenal vs Chelsea", "selection": "Arsenal"},
            {"matchup": "Leeds vs Fulham", "selection": "Leeds", "starts_at": now - timedelta(hours=1)},
        ]
    )
    scores = StubScores({"soccer_epl": [score_event("Arsenal", "Chelsea", 0, 2)]})

    pipeline_factory(scores).run()

    ticket, legs = load_ticket(ticket_id)
    assert ticket.status == "lost"
    assert [leg.status for leg in legs] == ["pending", "lost", "pending"]

    later = now + timedelta(hours=6)
    with session_factory() as session:
        live = SettlementRepository(session).pending_legs_of_live_tickets(
            starts_after=later - timedelta(days=5)
        )
    assert live == []

    summary = pipeline_factory(StubScores({}), at=later).run()
    assert summary.candidates == 0
    _, legs_after = load_ticket(ticket_id)
    assert [leg.review_attempts for leg in legs_after] == [0, 0, 0]


def test_loss_mid_pass_skips_remaining_legs_of_ticket(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket(
        [
            {"matchup": "Arsenal vs Chelsea", "selection": "Chelsea"},
            {"matchup": "Spurs vs Everton", "selection": "Spurs"},
        ]
    )
    scores = StubScores(
        {
            "soccer_epl": [
                score_event("Arsenal", "Chelsea", 3, 0),
                score_event("Spurs", "Everton", 1, 0),
            ]
        }
    )

    summary = pipeline_factory(scores).run()

    _, legs = load_ticket(ticket_id)
    assert [leg.status for leg in legs] == ["lost", "pending"]
    assert summary.skipped_legs == 1


def test_in_progress_event_keeps_retry_budget(make_ticket, load_ticket, pipeline_factory, now):
    ticket_id = make_ticket([{"review_attempts": 2}])
    scores = StubScores(
        {"soccer_epl": [score_event("Arsenal", "Chelsea", 1, 1, completed=False)]}
    )

    summary = pipeline_factory(scores).run()

    _, legs = load_ticket(ticket_id)
    assert legs[0].status == "pending"
    assert legs[0].review_attempts == 2
    assert legs[0].last_checked_at.replace(tzinfo=None) == now.replace(tzinfo=None)
    assert summary.in_progress == 1


def test_missing_event_spends_an_attempt(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket([{"review_attempts": 4}])
    summary = pipeline_factory(StubScores({"soccer_epl": []})).run()

    _, legs = load_ticket(ticket_id)
    assert legs[0].status == "pending"
    assert legs[0].review_attempts == 5
    assert legs[0].last_checked_at is not None
    assert summary.no_evidence == 1


def test_competition_outage_is_isolated(make_ticket, load_ticket, pipeline_factory):
    nba_ticket = make_ticket(
        [{"competition": "NBA", "matchup": "Lakers vs Celtics", "selection": "Lakers"}]
    )
    epl_ticket = make_ticket([{"selection": "Arsenal"}])
    scores = StubScores(
        {
            "basketball_nba": EvidenceUnavailable("basketball_nba", "HTTP 500"),
            "soccer_epl": [score_event("Arsenal", "Chelsea", 2, 0)],
        }
    )

    summary = pipeline_factory(scores).run()

    _, nba_legs = load_ticket(nba_ticket)
    assert nba_legs[0].review_attempts == 0
    assert nba_legs[0].last_checked_at is None
    _, epl_legs = load_ticket(epl_ticket)
    assert epl_legs[0].status == "won"
    assert summary.failed_competitions == ["basketball_nba"]


def test_unknown_competition_counts_as_no_match(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket([{"competition": "Liga Amateur Regional"}])
    scores = StubScores({})

    summary = pipeline_factory(scores).run()

    _, legs = load_ticket(ticket_id)
    assert scores.calls == []
    assert legs[0].review_attempts == 1
    assert summary.unknown_competitions == ["Liga Amateur Regional"]


def test_judge_resolves_selection_rules_cannot(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket([{"selection": "Both teams to score"}])
    scores = StubScores({"soccer_epl": [score_event("Arsenal", "Chelsea", 2, 1)]})
    judge = StubJudge({"Both teams to score": JudgeVerdict.WON})

    pipeline_factory(scores, judge).run()

    ticket, legs = load_ticket(ticket_id)
    assert judge.calls == [
        {"matchup": "Arsenal vs Chelsea", "score": "2-1", "selection": "Both teams to score"}
    ]
    assert legs[0].status == "won"
    assert ticket.status == "won"


def test_judge_void_verdict(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket([{"selection": "Over 3"}])
    scores = StubScores({"soccer_epl": [score_event("Arsenal", "Chelsea", 2, 1)]})

    pipeline_factory(scores, StubJudge({"Over 3": JudgeVerdict.VOID})).run()

    ticket, legs = load_ticket(ticket_id)
    assert legs[0].status == "void"
    assert ticket.status == "won"


def test_judge_contract_violation_leaves_leg_pending(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket([{"selection": "Arsenal -1.5"}])
    scores = StubScores({"soccer_epl": [score_event("Arsenal", "Chelsea", 2, 1)]})

    summary = pipeline_factory(scores, StubJudge()).run()

    ticket, legs = load_ticket(ticket_id)
    assert legs[0].status == "pending"
    assert legs[0].review_attempts == 1
    assert ticket.status == "pending"
    assert summary.judge_failures == 1


def test_leg_past_ceiling_is_left_alone(make_ticket, load_ticket, pipeline_factory, test_settings):
    ticket_id = make_ticket([{"review_attempts": 13}])
    scores = StubScores({"soccer_epl": [score_event("Arsenal", "Chelsea", 2, 1)]})

    summary = pipeline_factory(scores).run(SettlementPolicy.primary(test_settings))

    _, legs = load_ticket(ticket_id)
    assert legs[0].status == "pending"
    assert summary.candidates == 0
    assert scores.calls == []


def test_pass_heals_ticket_left_inconsistent(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket([{"status": "lost"}, {"matchup": "Spurs vs Everton", "status": "won"}])

    summary = pipeline_factory(StubScores({})).run()

    ticket, _ = load_ticket(ticket_id)
    assert ticket.status == "lost"
    assert summary.reconciled_tickets == 1


def test_persistence_failure_abandons_only_that_leg(
    make_ticket, load_ticket, pipeline_factory, monkeypatch
):
    first = make_ticket([{"matchup": "Arsenal vs Chelsea", "selection": "Arsenal"}])
    second = make_ticket([{"matchup": "Spurs vs Everton", "selection": "Spurs"}])
    scores = StubScores(
        {
            "soccer_epl": [
                score_event("Arsenal", "Chelsea", 2, 1),
                score_event("Spurs", "Everton", 2, 0),
            ]
        }
    )
    original = SettlementRepository.record_outcome

    def flaky_record_outcome(self, leg, **kwargs):
        if leg.matchup == "Arsenal vs Chelsea":
            raise OperationalError("UPDATE partidos", {}, Exception("database is locked"))
        return original(self, leg, **kwargs)

    monkeypatch.setattr(SettlementRepository, "record_outcome", flaky_record_outcome)

    summary = pipeline_factory(scores).run()

    _, first_legs = load_ticket(first)
    _, second_legs = load_ticket(second)
    assert first_legs[0].status == "pending"
    assert second_legs[0].status == "won"
    assert summary.persistence_failures == 1


def test_candidate_read_failure_is_fatal(pipeline_factory, monkeypatch):
    def broken(self, **kwargs):
        raise OperationalError("SELECT", {}, Exception("no such table"))

    monkeypatch.setattr(SettlementRepository, "pending_legs_of_live_tickets", broken)

    with pytest.raises(OperationalError):
        pipeline_factory(StubScores({})).run()


def test_rerun_with_same_state_is_idempotent(make_ticket, load_ticket, pipeline_factory, now):
    ticket_id = make_ticket([{"selection": "Arsenal"}, {"matchup": "Spurs vs Everton", "selection": "Spurs"}])
    scores = StubScores({"soccer_epl": [score_event("Arsenal", "Chelsea", 2, 1)]})

    pipeline_factory(scores).run()
    first_ticket, first_legs = load_ticket(ticket_id)
    pipeline_factory(scores, at=now + timedelta(minutes=5)).run()
    second_ticket, second_legs = load_ticket(ticket_id)

    assert first_ticket.status == second_ticket.status == "pending"
    assert [leg.status for leg in first_legs] == [leg.status for leg in second_legs]
    assert [leg.review_attempts for leg in second_legs] == [0, 1]


def test_completed_event_without_scores_is_not_settled(make_ticket, load_ticket, pipeline_factory):
    ticket_id = make_ticket([{"selection": "Draw"}])
    payload = score_event("Arsenal", "Chelsea", 0, 0)
    payload["scores"] = []

    summary = pipeline_factory(StubScores({"soccer_epl": [payload]})).run()

    ticket, legs = load_ticket(ticket_id)
    assert legs[0].status == "pending"
    assert legs[0].review_attempts == 1
    assert ticket.status == "pending"
    assert summary.no_evidence == 1


def test_primary_pass_paces_between_tickets(make_ticket, test_settings, session_factory, now):
    make_ticket([{"selection": "Arsenal"}])
    make_ticket([{"selection": "Chelsea"}])
    scores = StubScores({"soccer_epl": [score_event("Arsenal", "Chelsea", 2, 1)]})
    sleeps: list[float] = []
    pipeline = SettlementPipeline(
        test_settings,
        session_factory=session_factory,
        scores_client=scores,
        judge=StubJudge(),
        clock=lambda: now,
        sleep=sleeps.append,
    )
    policy = replace(SettlementPolicy.primary(test_settings), ticket_delay_seconds=0.5)

    summary = pipeline.run(policy)

    assert summary.settled == {"won": 1, "lost": 1}
    assert sleeps == [0.5]
