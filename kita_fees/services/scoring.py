"""Match scoring for bank transactions against fee expectations.

Everything here is pure: the ledger loads a ``ScoringContext`` and the functions
below only read it.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Protocol
from uuid import UUID

import yaml

from kita_fees.config import settings
from kita_fees.logger import get_logger
from kita_fees.models import FeeType, ReasonCode

logger = get_logger(__name__)

AMOUNT_EPSILON = Decimal("0.01")
NAME_MATCH_THRESHOLD = 0.5
MEMBER_NUMBER_PATTERN = re.compile(r"\b(\d{5})\b")


@dataclass(frozen=True)
class ReconciliationConfig:
    """Runtime configuration for scoring and matching."""

    # Scorer weights (confidence units, not money)
    weight_trusted_iban: float
    weight_member_number: float
    weight_child_name: float
    weight_parent_name: float
    weight_amount_exact: float
    weight_fee_type: float
    max_confidence: float
    # Matcher thresholds
    auto_match_threshold: float
    ambiguity_margin: float
    min_confidence: float
    max_suggestions: int
    # Collective payment search
    subset_tolerance: Decimal
    max_subset_size: int
    candidate_pool_size: int
    # Anomaly detection
    amount_tolerance: Decimal
    duplicate_window_days: int
    late_grace_days: int
    # Known fee amounts used to infer fee types and to charge late fees
    food_fee_amount: Decimal
    membership_fee_amount: Decimal
    late_fee_amount: Decimal
    membership_late_fee_amount: Decimal
    late_fee_due_days: int


DEFAULT_CONFIG = ReconciliationConfig(
    weight_trusted_iban=0.80,
    weight_member_number=0.85,
    weight_child_name=0.60,
    weight_parent_name=0.55,
    weight_amount_exact=0.15,
    weight_fee_type=0.05,
    max_confidence=0.99,
    auto_match_threshold=0.80,
    ambiguity_margin=0.05,
    min_confidence=0.10,
    max_suggestions=10,
    subset_tolerance=Decimal("0.01"),
    max_subset_size=3,
    candidate_pool_size=30,
    amount_tolerance=Decimal("0.01"),
    duplicate_window_days=7,
    late_grace_days=0,
    food_fee_amount=Decimal("45.40"),
    membership_fee_amount=Decimal("30.00"),
    late_fee_amount=Decimal("10.00"),
    membership_late_fee_amount=Decimal("5.00"),
    late_fee_due_days=14,
)

_config_cache: ReconciliationConfig | None = None

_SECTION_FIELDS: dict[str, dict[str, str]] = {
    "weights": {
        "trusted_iban": "weight_trusted_iban",
        "member_number": "weight_member_number",
        "child_name": "weight_child_name",
        "parent_name": "weight_parent_name",
        "amount_exact": "weight_amount_exact",
        "fee_type": "weight_fee_type",
        "max_confidence": "max_confidence",
    },
    "thresholds": {
        "auto_match": "auto_match_threshold",
        "ambiguity_margin": "ambiguity_margin",
        "min_confidence": "min_confidence",
        "max_suggestions": "max_suggestions",
    },
    "combined": {
        "tolerance": "subset_tolerance",
        "max_subset_size": "max_subset_size",
        "candidate_pool_size": "candidate_pool_size",
    },
    "anomalies": {
        "amount_tolerance": "amount_tolerance",
        "duplicate_window_days": "duplicate_window_days",
        "late_grace_days": "late_grace_days",
    },
    "fees": {
        "food": "food_fee_amount",
        "membership": "membership_fee_amount",
        "late_fee": "late_fee_amount",
        "membership_late_fee": "membership_late_fee_amount",
        "late_fee_due_days": "late_fee_due_days",
    },
}

_ENV_OVERRIDES = {
    "RECONCILIATION_AUTO_MATCH_THRESHOLD": "auto_match_threshold",
    "RECONCILIATION_MIN_CONFIDENCE": "min_confidence",
    "RECONCILIATION_SUBSET_TOLERANCE": "subset_tolerance",
    "RECONCILIATION_LATE_FEE_AMOUNT": "late_fee_amount",
}


def _coerce(field_name: str, raw: object) -> object:
    current = getattr(DEFAULT_CONFIG, field_name)
    if isinstance(current, Decimal):
        return Decimal(str(raw))
    if isinstance(current, int):
        return int(raw)
    return float(raw)


def _config_path() -> Path:
    if settings.reconciliation_config_path:
        return Path(settings.reconciliation_config_path)
    return Path(__file__).resolve().parents[2] / "config" / "reconciliation.yaml"


def load_reconciliation_config(force_reload: bool = False) -> ReconciliationConfig:
    """Load reconciliation configuration from YAML if available.

    Caches the result to avoid repeated disk I/O.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_CONFIG
    config_path = _config_path()

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text()) or {}
            overrides: dict[str, object] = {}
            for section, fields in _SECTION_FIELDS.items():
                values = raw.get(section) or {}
                for key, field_name in fields.items():
                    if key in values:
                        overrides[field_name] = _coerce(field_name, values[key])
            config = replace(config, **overrides)
        except (OSError, yaml.YAMLError, TypeError, ValueError, ArithmeticError) as e:
            logger.warning(
                "Failed to load reconciliation config - using defaults",
                config_path=str(config_path),
                error=str(e),
                error_type=type(e).__name__,
            )

    for env_name, field_name in _ENV_OVERRIDES.items():
        env_value = os.getenv(env_name)
        if env_value:
            config = replace(config, **{field_name: _coerce(field_name, env_value)})

    _config_cache = config
    return config


# =============================================================================
# Text helpers
# =============================================================================

_FOLDS = (("ä", "a"), ("ö", "o"), ("ü", "u"), ("ß", "s"), ("ae", "a"), ("oe", "o"), ("ue", "u"), ("ss", "s"))


def normalize_text(value: str | None) -> str:
    """Lower-case, fold umlauts, split letters from digits, drop punctuation."""
    if not value:
        return ""
    text = value.lower()
    for source, target in _FOLDS:
        text = text.replace(source, target)
    text = re.sub(r"([a-z])(\d)", r"\1 \2", text)
    text = re.sub(r"(\d)([a-z])", r"\1 \2", text)
    cleaned = re.sub(r"[^a-z0-9]+", " ", text).strip()
    return re.sub(r"\s+", " ", cleaned)


def normalize_iban(value: str | None) -> str | None:
    if not value:
        return None
    compact = re.sub(r"\s+", "", value).upper()
    return compact or None


def extract_member_numbers(text: str | None) -> set[str]:
    """Return every five-digit token in the text."""
    return set(MEMBER_NUMBER_PATTERN.findall(normalize_text(text)))


def person_name_score(text: str, first_name: str | None, last_name: str | None) -> float:
    """Score how clearly a person's name appears in already normalized text."""
    first = normalize_text(first_name)
    last = normalize_text(last_name)
    if not text or not last:
        return 0.0

    padded = f" {text} "
    if first and (f" {first} {last} " in padded or f" {last} {first} " in padded):
        return 0.85

    has_last = len(last.replace(" ", "")) >= 3 and f" {last} " in padded
    has_first = bool(first) and f" {first} " in padded
    if has_last and has_first:
        return 0.80
    if has_last:
        if first and f" {first[0]} " in padded:
            return 0.75
        return 0.60
    if has_first and len(first) >= 4:
        return 0.40
    return 0.0


_FEE_TYPE_KEYWORDS: tuple[tuple[FeeType, tuple[str, ...]], ...] = (
    (FeeType.REMINDER, ("mahn", "reminder", "säumnis")),
    (FeeType.MEMBERSHIP, ("mitglied", "vereinsbeitrag", "jahresbeitrag", "membership")),
    (FeeType.FOOD, ("essen", "verpflegung", "mittag", "food", "lunch")),
    (FeeType.CHILDCARE, ("platzgeld", "betreuung", "kita", "childcare")),
)


def detect_fee_type(
    description: str | None,
    amount: Decimal,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> FeeType:
    """Infer the fee type a payment is meant for.

    Keywords in the description win; otherwise known fee amounts (with or without
    the matching late fee) decide; anything else is assumed to be childcare.
    """
    text = normalize_text(description)
    for fee_type, keywords in _FEE_TYPE_KEYWORDS:
        if any(normalize_text(keyword) in text for keyword in keywords):
            return fee_type

    if amount in (config.food_fee_amount, config.food_fee_amount + config.late_fee_amount):
        return FeeType.FOOD
    if amount in (
        config.membership_fee_amount,
        config.membership_fee_amount + config.membership_late_fee_amount,
    ):
        return FeeType.MEMBERSHIP
    return FeeType.CHILDCARE


# =============================================================================
# Scoring inputs
# =============================================================================


class TransactionLike(Protocol):
    amount: Decimal
    payer_name: str | None
    payer_iban: str | None
    description: str | None

    @property
    def remaining_amount(self) -> Decimal: ...


class FeeLike(Protocol):
    id: UUID
    child_id: UUID
    fee_type: FeeType
    due_date: date

    @property
    def remaining_amount(self) -> Decimal: ...


@dataclass(frozen=True)
class PersonName:
    first_name: str
    last_name: str


@dataclass(frozen=True)
class ChildProfile:
    """What the scorer knows about a child."""

    id: UUID
    first_name: str
    last_name: str
    member_number: str | None = None
    household_id: UUID | None = None
    parents: tuple[PersonName, ...] = ()


@dataclass(frozen=True)
class ScoringContext:
    """Roster and trust data for one matching run.

    ``trusted_children`` and ``trusted_households`` are keyed by normalized IBAN.
    """

    children: Mapping[UUID, ChildProfile] = field(default_factory=dict)
    trusted_children: Mapping[str, frozenset[UUID]] = field(default_factory=dict)
    trusted_households: Mapping[str, frozenset[UUID]] = field(default_factory=dict)

    def is_trusted(self, iban: str | None, child: ChildProfile) -> bool:
        key = normalize_iban(iban)
        if key is None:
            return False
        if child.id in self.trusted_children.get(key, frozenset()):
            return True
        return child.household_id is not None and child.household_id in self.trusted_households.get(key, frozenset())

    def payer_key(self, child_id: UUID) -> UUID:
        """Fees of one household (or of one child without household) belong to one payer."""
        child = self.children.get(child_id)
        if child is not None and child.household_id is not None:
            return child.household_id
        return child_id


@dataclass(frozen=True)
class ScoreResult:
    confidence: float
    reason: ReasonCode | None
    breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def is_match(self) -> bool:
        return self.reason is not None and self.confidence > 0


NO_MATCH = ScoreResult(confidence=0.0, reason=None)

# Strongest first; used when two identity signals carry the same weight.
_IDENTITY_REASONS: tuple[tuple[str, ReasonCode], ...] = (
    ("trusted_iban", ReasonCode.TRUSTED_IBAN),
    ("member_number", ReasonCode.MEMBER_NUMBER),
    ("name", ReasonCode.NAME),
    ("parent_name", ReasonCode.PARENT_NAME),
)


def _match_text(tx: TransactionLike) -> str:
    return normalize_text(" ".join(part for part in (tx.payer_name, tx.description) if part))


def identity_breakdown(
    tx: TransactionLike,
    child: ChildProfile | None,
    context: ScoringContext,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> dict[str, float]:
    """Signals tying the payer to the child. Empty when nothing does."""
    if child is None:
        return {}

    breakdown: dict[str, float] = {}
    if context.is_trusted(tx.payer_iban, child):
        breakdown["trusted_iban"] = config.weight_trusted_iban

    if child.member_number and child.member_number in extract_member_numbers(tx.description):
        breakdown["member_number"] = config.weight_member_number

    text = _match_text(tx)
    child_score = person_name_score(text, child.first_name, child.last_name)
    parent_score = max(
        (person_name_score(text, parent.first_name, parent.last_name) for parent in child.parents),
        default=0.0,
    )
    child_weighted = child_score * config.weight_child_name if child_score >= NAME_MATCH_THRESHOLD else 0.0
    parent_weighted = parent_score * config.weight_parent_name if parent_score >= NAME_MATCH_THRESHOLD else 0.0
    # A shared surname would otherwise count twice.
    if child_weighted >= parent_weighted and child_weighted > 0:
        breakdown["name"] = round(child_weighted, 4)
    elif parent_weighted > 0:
        breakdown["parent_name"] = round(parent_weighted, 4)

    return breakdown


def _strongest_reason(breakdown: Mapping[str, float]) -> ReasonCode | None:
    best: tuple[float, int] | None = None
    reason: ReasonCode | None = None
    for priority, (key, code) in enumerate(_IDENTITY_REASONS):
        value = breakdown.get(key, 0.0)
        if value <= 0:
            continue
        rank = (value, -priority)
        if best is None or rank > best:
            best = rank
            reason = code
    return reason


def _cap(value: float, config: ReconciliationConfig) -> float:
    return round(min(value, config.max_confidence), 4)


def score(
    tx: TransactionLike,
    fee: FeeLike,
    context: ScoringContext,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> ScoreResult:
    """Score one (transaction, fee expectation) pair."""
    breakdown = identity_breakdown(tx, context.children.get(fee.child_id), context, config)
    reason = _strongest_reason(breakdown)
    if reason is None:
        return NO_MATCH

    if abs(fee.remaining_amount - tx.remaining_amount) < AMOUNT_EPSILON:
        breakdown["amount"] = config.weight_amount_exact
    if detect_fee_type(tx.description, tx.amount, config) == fee.fee_type:
        breakdown["fee_type"] = config.weight_fee_type

    return ScoreResult(
        confidence=_cap(sum(breakdown.values()), config),
        reason=reason,
        breakdown=breakdown,
    )


def identity_confidence(
    tx: TransactionLike,
    fee: FeeLike,
    context: ScoringContext,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> float:
    return round(sum(identity_breakdown(tx, context.children.get(fee.child_id), context, config).values()), 4)


def subset_difference(tx: TransactionLike, fees: Iterable[FeeLike]) -> Decimal:
    return abs(sum((fee.remaining_amount for fee in fees), Decimal("0")) - tx.remaining_amount)


def score_combination(
    tx: TransactionLike,
    fees: Sequence[FeeLike],
    context: ScoringContext,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> ScoreResult:
    """Score a collective payment covering several fees of one payer.

    The weakest member's identity sets the base; the closer the fees sum to the
    transaction amount, the larger the amount bonus. Outside tolerance, no match.
    """
    if len(fees) < 2:
        raise ValueError("A combination needs at least two fees")

    identities = [identity_confidence(tx, fee, context, config) for fee in fees]
    weakest = min(identities)
    if weakest <= 0:
        return NO_MATCH

    diff = subset_difference(tx, fees)
    if diff > config.subset_tolerance:
        return NO_MATCH

    if config.subset_tolerance > 0:
        closeness = 1.0 - float(diff / config.subset_tolerance)
    else:
        closeness = 1.0
    amount_bonus = round(config.weight_amount_exact * closeness, 4)

    return ScoreResult(
        confidence=_cap(weakest + amount_bonus, config),
        reason=ReasonCode.COMBINED,
        breakdown={"identity": weakest, "amount": amount_bonus},
    )
