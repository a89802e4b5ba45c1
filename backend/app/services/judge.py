"""Natural-language judge for selections the rule evaluator cannot decide."""

from __future__ import annotations

import json
import random
import time
from typing import Any, Callable, Mapping, Sequence

import httpx
from loguru import logger
from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError
from pydantic import ValidationError

from app.core.config import Settings
from app.domain import FinalScore, JudgeVerdict
from app.schemas import LegBrief, TicketAudit
from pipelines.errors import JudgeContractViolation, JudgeUnavailable

from .openai_client import get_openai_client

_LEG_VERDICTS = frozenset({JudgeVerdict.WON, JudgeVerdict.LOST, JudgeVerdict.VOID})
_RETRY_BASE_SLEEP_SECONDS = 1.5
_RETRY_MAX_SLEEP_SECONDS = 10.0
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

LEG_PROMPT = (
    "You are a sports betting settlement judge.\n"
    "Match: {matchup}\n"
    "Final score: {final_score}\n"
    'Bet: "{selection}"\n\n'
    'Reply with exactly one word: "WON", "LOST" or "VOID".'
)

AUDIT_PROMPT = """You are a meticulous betting auditor. Decide whether each bet on the ticket
was won or lost using only the evidence below.

TICKET LEGS
{legs}

EVIDENCE
{evidence}

RULES
1. For EVERY leg, find its final score in the evidence and compare it with the selection.
   - "Over 2.5" with a 2-1 final (total 3) is WON.
   - "Real Madrid" with a 1-1 final is LOST.
2. If the evidence has no result for a leg, or the match has not been played, use "PENDING".
3. Use "VOID" only for cancelled or postponed matches, or bets refunded by the rules.
4. Never use any status other than WON, LOST, PENDING or VOID. Never answer "unknown".
5. Return every leg id from the input exactly once.

Respond with JSON only:
{{"summary": "one short paragraph", "legs": [{{"id": 123, "final_score": "2-1", "status": "WON"}}]}}
"""


def _status_code_from_exception(exc: Exception) -> int | None:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    if response is not None:
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
    return None


def _should_retry_exception(exc: Exception) -> bool:
    if isinstance(exc, (httpx.RemoteProtocolError, APITimeoutError, APIConnectionError)):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code in _RETRYABLE_STATUS_CODES
    if isinstance(exc, APIError):
        return _status_code_from_exception(exc) in _RETRYABLE_STATUS_CODES
    return False


def _retry_sleep_seconds(attempt: int) -> float:
    backoff = _RETRY_BASE_SLEEP_SECONDS * (2 ** max(attempt - 1, 0))
    backoff = min(backoff, _RETRY_MAX_SLEEP_SECONDS)
    jitter = random.uniform(0.0, 0.75)
    return backoff + jitter


def parse_leg_verdict(raw: str | None) -> JudgeVerdict:
    """Map a one-word judge reply onto WON/LOST/VOID or reject it."""

    token = (raw or "").strip().upper()
    try:
        verdict = JudgeVerdict(token)
    except ValueError:
        verdict = None
    if verdict not in _LEG_VERDICTS:
        raise JudgeContractViolation(
            f"judge replied {token[:40]!r}; expected WON, LOST or VOID",
            raw_output=raw,
        )
    return verdict


def parse_ticket_audit(raw: str | None, leg_ids: Sequence[int]) -> TicketAudit:
    """Validate a ticket-level judge payload against the legs that were asked about."""

    try:
        payload = json.loads(raw or "")
    except json.JSONDecodeError as exc:
        raise JudgeContractViolation("judge returned invalid JSON", raw_output=raw) from exc
    try:
        audit = TicketAudit.model_validate(payload)
    except ValidationError as exc:
        raise JudgeContractViolation(
            f"judge payload failed validation: {exc.error_count()} error(s)",
            raw_output=raw,
        ) from exc

    returned = [leg.id for leg in audit.legs]
    expected = set(leg_ids)
    missing = sorted(expected - set(returned))
    unexpected = sorted(set(returned) - expected)
    if missing or unexpected or len(returned) != len(set(returned)):
        raise JudgeContractViolation(
            f"judge coverage mismatch missing={missing} unexpected={unexpected}",
            raw_output=raw,
        )
    return audit


class LLMJudge:
    """Resolve bets through an OpenAI-compatible chat model at fixed sampling."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: Any | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_openai_client(self._settings)
        return self._client

    def judge_leg(
        self, *, matchup: str, final_score: FinalScore | str, selection: str
    ) -> JudgeVerdict:
        score_label = final_score.label if isinstance(final_score, FinalScore) else final_score
        prompt = LEG_PROMPT.format(
            matchup=matchup, final_score=score_label, selection=selection
        )
        logger.info("Judge leg start: '{}' in {} ({})", selection, matchup, score_label)
        content = self._complete([{"role": "user", "content": prompt}])
        verdict = parse_leg_verdict(content)
        logger.info("Judge leg verdict: {}", verdict.value)
        return verdict

    def audit_ticket(self, legs: Sequence[LegBrief], evidence_text: str) -> TicketAudit:
        legs_json = json.dumps([leg.model_dump() for leg in legs], indent=2, ensure_ascii=False)
        prompt = AUDIT_PROMPT.format(legs=legs_json, evidence=evidence_text)
        content = self._complete(
            [{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
        )
        logger.debug("Judge audit raw output: {}", content)
        audit = parse_ticket_audit(content, [leg.id for leg in legs])
        logger.info(
            "Judge audit covered {} legs: {}",
            len(audit.legs),
            {leg.id: leg.status for leg in audit.legs},
        )
        return audit

    def _complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        **extra: Any,
    ) -> str | None:
        attempts = self._settings.judge_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                completion = self.client.chat.completions.create(
                    model=self._settings.judge_model,
                    messages=list(messages),
                    temperature=self._settings.judge_temperature,
                    **extra,
                )
            except Exception as exc:  # noqa: BLE001 - classified below
                if not _should_retry_exception(exc):
                    raise JudgeUnavailable(
                        f"judge call failed: {exc.__class__.__name__}: {exc}"
                    ) from exc
                if attempt >= attempts:
                    raise JudgeUnavailable(
                        f"judge call failed after {attempts} attempts: {exc.__class__.__name__}"
                    ) from exc
                delay = _retry_sleep_seconds(attempt)
                logger.warning(
                    "Judge call attempt {}/{} failed ({}); retrying in {:.2f}s",
                    attempt,
                    attempts,
                    exc.__class__.__name__,
                    delay,
                )
                self._sleep(delay)
                continue

            usage = getattr(completion, "usage", None)
            if usage is not None:
                logger.debug(
                    "Judge usage model={} usage={}",
                    self._settings.judge_model,
                    usage.model_dump() if hasattr(usage, "model_dump") else usage,
                )
            choices = getattr(completion, "choices", None) or []
            if not choices:
                raise JudgeContractViolation("judge returned no choices")
            return choices[0].message.content
        raise JudgeUnavailable("judge call was not attempted")
