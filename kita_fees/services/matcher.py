"""Candidate search and match decisions for bank transactions."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from itertools import combinations
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from kita_fees.logger import get_logger
from kita_fees.models import BankTransaction, FeeExpectation, ReasonCode
from kita_fees.services.allocation import AllocationResult, allocate, plan_split
from kita_fees.services.ledger import list_open_fees, load_scoring_context
from kita_fees.services.scoring import (
    ReconciliationConfig,
    ScoringContext,
    TransactionLike,
    load_reconciliation_config,
    score,
    score_combination,
    subset_difference,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Candidate:
    """One fee, or a set of fees of one payer, that a transaction may pay."""

    fees: tuple[FeeExpectation, ...]
    confidence: float
    reason: ReasonCode
    breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def is_combined(self) -> bool:
        return len(self.fees) > 1

    @property
    def fee_ids(self) -> tuple[UUID, ...]:
        return tuple(fee.id for fee in self.fees)

    @property
    def earliest_due_date(self) -> date:
        return min(fee.due_date for fee in self.fees)


@dataclass(frozen=True)
class AutoMatched:
    candidate: Candidate
    allocation: AllocationResult | None = None


@dataclass(frozen=True)
class Suggested:
    candidates: tuple[Candidate, ...]


@dataclass(frozen=True)
class Unmatchable:
    pass


MatchOutcome = AutoMatched | Suggested | Unmatchable


def ranking_key(candidate: Candidate, context: ScoringContext) -> tuple:
    """Higher confidence, then earlier due date, then child last name, then fee ids."""
    child = context.children.get(candidate.fees[0].child_id)
    last_name = child.last_name.casefold() if child else ""
    return (
        -candidate.confidence,
        candidate.earliest_due_date,
        last_name,
        tuple(str(fee_id) for fee_id in candidate.fee_ids),
    )


def _fee_order(fee: FeeExpectation) -> tuple[date, str]:
    return (fee.due_date, str(fee.id))


def _combined_candidates(
    tx: TransactionLike,
    pool: Sequence[FeeExpectation],
    context: ScoringContext,
    config: ReconciliationConfig,
) -> list[Candidate]:
    groups: dict[UUID, list[FeeExpectation]] = {}
    for fee in pool:
        groups.setdefault(context.payer_key(fee.child_id), []).append(fee)

    found: list[Candidate] = []
    for group in groups.values():
        if len(group) < 2:
            continue
        ordered = sorted(group, key=_fee_order)
        for size in range(2, min(config.max_subset_size, len(ordered)) + 1):
            for subset in combinations(ordered, size):
                if subset_difference(tx, subset) > config.subset_tolerance:
                    continue
                result = score_combination(tx, subset, context, config)
                if result.is_match:
                    found.append(
                        Candidate(
                            fees=subset,
                            confidence=result.confidence,
                            reason=ReasonCode.COMBINED,
                            breakdown=result.breakdown,
                        )
                    )
    return found


def find_candidates(
    tx: TransactionLike,
    open_fees: Sequence[FeeExpectation],
    context: ScoringContext,
    config: ReconciliationConfig,
) -> list[Candidate]:
    """Score every open fee plus bounded fee combinations; return them ranked."""
    singles: list[Candidate] = []
    for fee in open_fees:
        if fee.remaining_amount <= 0:
            continue
        result = score(tx, fee, context, config)
        if result.is_match:
            singles.append(
                Candidate(fees=(fee,), confidence=result.confidence, reason=result.reason, breakdown=result.breakdown)
            )
    singles.sort(key=lambda candidate: ranking_key(candidate, context))

    pool = [candidate.fees[0] for candidate in singles[: config.candidate_pool_size]]
    ranked = singles + _combined_candidates(tx, pool, context, config)
    ranked.sort(key=lambda candidate: ranking_key(candidate, context))
    return [candidate for candidate in ranked if candidate.confidence >= config.min_confidence]


def decide(candidates: Sequence[Candidate], config: ReconciliationConfig) -> MatchOutcome:
    """Auto-match a clear winner, otherwise suggest (or give up).

    The top candidate wins when it reaches the auto threshold and the runner-up
    trails it by at least the ambiguity margin.
    """
    if not candidates:
        return Unmatchable()

    top = candidates[0]
    if top.confidence >= config.auto_match_threshold:
        runner_up = candidates[1] if len(candidates) > 1 else None
        if runner_up is None or round(top.confidence - runner_up.confidence, 4) >= config.ambiguity_margin:
            return AutoMatched(candidate=top)
    return Suggested(candidates=tuple(candidates[: config.max_suggestions]))


async def rank_for_transaction(
    db: AsyncSession,
    transaction: BankTransaction,
    *,
    child_id: UUID | None = None,
    config: ReconciliationConfig | None = None,
) -> list[Candidate]:
    """Ranked candidates for a transaction, read fresh from the ledger."""
    config = config or load_reconciliation_config()
    open_fees = await list_open_fees(db, child_id=child_id)
    if not open_fees:
        return []
    context = await load_scoring_context(db, {fee.child_id for fee in open_fees}, [transaction.payer_iban])
    return find_candidates(transaction, open_fees, context, config)


async def match_transaction(
    db: AsyncSession,
    transaction: BankTransaction,
    *,
    apply: bool = True,
    actor: str | None = None,
    config: ReconciliationConfig | None = None,
) -> MatchOutcome:
    """Match one transaction; auto-matches are allocated when ``apply`` is set."""
    config = config or load_reconciliation_config()
    candidates = await rank_for_transaction(db, transaction, config=config)
    outcome = decide(candidates, config)

    if isinstance(outcome, AutoMatched) and apply:
        candidate = outcome.candidate
        allocation = await allocate(
            db,
            transaction.id,
            plan_split(transaction.remaining_amount, candidate.fees),
            matched_by=candidate.reason,
            confidence=candidate.confidence,
            allow_overpayment=True,
            actor=actor,
        )
        outcome = AutoMatched(candidate=candidate, allocation=allocation)
        logger.info(
            "Transaction auto-matched",
            transaction_id=str(transaction.id),
            fees=[str(fee_id) for fee_id in candidate.fee_ids],
            reason=candidate.reason.value,
            confidence=candidate.confidence,
        )
    elif isinstance(outcome, Suggested):
        logger.debug(
            "Match suggestions",
            transaction_id=str(transaction.id),
            candidates=len(outcome.candidates),
            top_confidence=outcome.candidates[0].confidence,
        )
    return outcome
