from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from policy_engine.runtime_profile import feature_enabled
from policy_engine.telemetry import Telemetry, resolve


class ConstraintKind(str, Enum):
    HARD = "HARD"
    SOFT = "SOFT"
    CONDITIONAL = "CONDITIONAL"
    DYNAMIC = "DYNAMIC"


class Severity(str, Enum):
    BLOCK = "BLOCK"
    WARN = "WARN"
    INFO = "INFO"


class EvalStatus(str, Enum):
    SATISFIED = "SATISFIED"
    VIOLATED = "VIOLATED"
    UNKNOWN = "UNKNOWN"
    UNSUPPORTED = "UNSUPPORTED"
    INSUFFICIENT_CONTEXT = "INSUFFICIENT_CONTEXT"


class Operator(str, Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "=="
    NE = "!="

    @property
    def is_upper_bound(self) -> bool:
        return self in (Operator.LT, Operator.LE)

    @property
    def is_lower_bound(self) -> bool:
        return self in (Operator.GT, Operator.GE)


# AND-combination rank; the highest rank present wins.
_STATUS_RANK = {
    EvalStatus.SATISFIED: 0,
    EvalStatus.UNSUPPORTED: 1,
    EvalStatus.UNKNOWN: 2,
    EvalStatus.INSUFFICIENT_CONTEXT: 3,
    EvalStatus.VIOLATED: 4,
}

INDETERMINATE_STATUSES = frozenset(
    {EvalStatus.UNKNOWN, EvalStatus.UNSUPPORTED, EvalStatus.INSUFFICIENT_CONTEXT}
)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ConstraintDefinition:
    id: str
    version: str
    kind: ConstraintKind
    severity: Severity
    expression: str
    description: str | None = None
    activation_predicate: str | None = None
    required_context_keys: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConstraintDefinition":
        return cls(
            id=str(payload["id"]),
            version=str(payload.get("version") or "v1"),
            kind=ConstraintKind(payload["kind"]),
            severity=Severity(payload.get("severity") or "WARN"),
            expression=str(payload["expression"]),
            description=payload.get("description"),
            activation_predicate=payload.get("activation_predicate"),
            required_context_keys=tuple(payload.get("required_context_keys") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "expression": self.expression,
            "description": self.description,
            "activation_predicate": self.activation_predicate,
            "required_context_keys": list(self.required_context_keys),
        }


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParseError:
    code: str
    message: str
    segment_index: int = 0
    raw: str = ""


@dataclass(frozen=True)
class AtomicClause:
    metric: str
    op: Operator
    literal: str
    quoted: bool = False
    raw: str = ""

    @property
    def numeric_literal(self) -> float | None:
        if self.quoted:
            return None
        return as_number(self.literal)

    def render(self) -> str:
        literal = f'"{self.literal}"' if self.quoted else self.literal
        return f"{self.metric} {self.op.value} {literal}"


@dataclass(frozen=True)
class AndExpression:
    clauses: tuple[AtomicClause | ParseError, ...]

    @property
    def errors(self) -> list[ParseError]:
        return [c for c in self.clauses if isinstance(c, ParseError)]


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)
  | (?P<string>"[^"]*"|'[^']*')
  | (?P<op>[<>=!]+)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_.\-]*)
  | (?P<paren>[()])
  | (?P<other>.)
    """,
    re.VERBOSE,
)

_AND_SPLIT_RE = re.compile(r"\s+AND\s+", re.IGNORECASE)
_OPERATORS = {op.value: op for op in Operator}


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    for match in _TOKEN_RE.finditer(text):
        kind = match.lastgroup or "other"
        if kind == "ws":
            continue
        tokens.append((kind, match.group()))
    return tokens


class _ClauseParser:
    """metric OP literal, one clause per segment."""

    def __init__(self, text: str, segment_index: int) -> None:
        self._text = text
        self._segment_index = segment_index
        self._tokens = _tokenize(text)
        self._pos = 0

    def _error(self, code: str, message: str) -> ParseError:
        return ParseError(code=code, message=message, segment_index=self._segment_index, raw=self._text)

    def _peek(self) -> tuple[str, str] | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _next(self) -> tuple[str, str] | None:
        tok = self._peek()
        if tok is not None:
            self._pos += 1
        return tok

    def parse(self) -> AtomicClause | ParseError:
        if not self._tokens:
            return self._error("empty_expression", "expression is empty")
        if any(kind == "paren" for kind, _ in self._tokens):
            return self._error("parentheses_unsupported", "parentheses are not supported")

        metric_tok = self._next()
        if metric_tok is None or metric_tok[0] != "ident":
            return self._error("missing_metric", f"expected metric name in: {self._text}")

        op_tok = self._next()
        if op_tok is None:
            return self._error("missing_operator", f"missing operator after {metric_tok[1]}")
        if op_tok[0] != "op":
            return self._error("missing_operator", f"expected operator, got: {op_tok[1]}")
        op = _OPERATORS.get(op_tok[1])
        if op is None:
            return self._error("unsupported_operator", f"unsupported operator: {op_tok[1]}")

        literal_tok = self._next()
        if literal_tok is None:
            return self._error("missing_rhs", f"missing right-hand value after {op_tok[1]}")
        kind, value = literal_tok
        if kind not in {"number", "string", "ident"}:
            return self._error("invalid_literal", f"invalid literal: {value}")

        trailing = self._peek()
        if trailing is not None:
            return self._error("unexpected_token", f"unexpected token: {trailing[1]}")

        quoted = kind == "string"
        literal = value[1:-1] if quoted else value
        return AtomicClause(metric=metric_tok[1], op=op, literal=literal, quoted=quoted, raw=self._text.strip())


def split_segments(expression: str) -> list[str]:
    return _AND_SPLIT_RE.split(expression.strip())


def parse_clause(text: str, segment_index: int = 0) -> AtomicClause | ParseError:
    return _ClauseParser(text, segment_index).parse()


def parse_expression(expression: str) -> AndExpression | ParseError:
    """Parse ``clause (AND clause)*``.

    Segment-level failures are kept inside the returned AndExpression so the
    remaining clauses can still be evaluated; only an empty expression fails as
    a whole.
    """
    if not expression or not expression.strip():
        return ParseError(code="empty_expression", message="expression is empty", raw=expression or "")
    segments = split_segments(expression)
    return AndExpression(clauses=tuple(parse_clause(seg, idx) for idx, seg in enumerate(segments)))


def referenced_metrics(expression: str) -> set[str]:
    parsed = parse_expression(expression)
    if isinstance(parsed, ParseError):
        return set()
    return {c.metric for c in parsed.clauses if isinstance(c, AtomicClause)}


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClauseOutcome:
    expression: str
    status: EvalStatus
    reason: str | None = None
    operator: Operator | None = None
    value_left: Any = None
    value_right: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "expression": self.expression,
            "status": self.status.value,
            "reason": self.reason,
            "operator": self.operator.value if self.operator else None,
            "value_left": self.value_left,
            "value_right": self.value_right,
        }


@dataclass(frozen=True)
class EvaluatedConstraintResult:
    definition: ConstraintDefinition
    status: EvalStatus
    details: str | None = None
    operator: Operator | None = None
    value_left: Any = None
    value_right: Any = None
    activation_matched: bool = True
    clauses: tuple[ClauseOutcome, ...] = ()
    evaluated_at: str = field(default_factory=_utcnow_iso)

    @property
    def is_hard_violation(self) -> bool:
        return self.definition.kind == ConstraintKind.HARD and self.status == EvalStatus.VIOLATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "constraint_id": self.definition.id,
            "kind": self.definition.kind.value,
            "severity": self.definition.severity.value,
            "status": self.status.value,
            "details": self.details,
            "operator": self.operator.value if self.operator else None,
            "value_left": self.value_left,
            "value_right": self.value_right,
            "activation_matched": self.activation_matched,
            "clauses": [c.to_dict() for c in self.clauses],
            "evaluated_at": self.evaluated_at,
        }


def combine_statuses(statuses: Iterable[EvalStatus]) -> EvalStatus:
    combined = EvalStatus.SATISFIED
    for status in statuses:
        if _STATUS_RANK[status] > _STATUS_RANK[combined]:
            combined = status
    return combined


def as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().strip("\"'")


def _equals(observed: Any, clause: AtomicClause) -> bool:
    left = as_number(observed)
    right = clause.numeric_literal
    if left is not None and right is not None:
        return left == right
    return _as_text(observed) == clause.literal


def evaluate_clause(
    clause: AtomicClause | ParseError,
    metrics: Mapping[str, Any],
    *,
    kind: ConstraintKind = ConstraintKind.HARD,
) -> ClauseOutcome:
    if isinstance(clause, ParseError):
        return ClauseOutcome(expression=clause.raw or f"SEG{clause.segment_index}", status=EvalStatus.UNSUPPORTED, reason=clause.code)

    expression = clause.render()
    observed = metrics.get(clause.metric)
    if observed is None:
        status = EvalStatus.INSUFFICIENT_CONTEXT if kind == ConstraintKind.DYNAMIC else EvalStatus.UNKNOWN
        return ClauseOutcome(expression=expression, status=status, reason="missing_metric", operator=clause.op)

    if clause.op in (Operator.EQ, Operator.NE):
        matched = _equals(observed, clause)
        if clause.op == Operator.NE:
            matched = not matched
    else:
        left = as_number(observed)
        right = clause.numeric_literal
        if left is None or right is None:
            return ClauseOutcome(
                expression=expression,
                status=EvalStatus.UNSUPPORTED,
                reason="non_numeric_comparison",
                operator=clause.op,
                value_left=observed,
                value_right=clause.literal,
            )
        if clause.op == Operator.LT:
            matched = left < right
        elif clause.op == Operator.LE:
            matched = left <= right
        elif clause.op == Operator.GT:
            matched = left > right
        else:
            matched = left >= right

    return ClauseOutcome(
        expression=expression,
        status=EvalStatus.SATISFIED if matched else EvalStatus.VIOLATED,
        operator=clause.op,
        value_left=observed,
        value_right=clause.literal,
    )


def _activation_matched(predicate: str, metrics: Mapping[str, Any]) -> bool:
    parsed = parse_expression(predicate)
    if isinstance(parsed, ParseError):
        return False
    outcomes = [evaluate_clause(c, metrics) for c in parsed.clauses]
    return combine_statuses(o.status for o in outcomes) == EvalStatus.SATISFIED


def evaluate_constraint(
    definition: ConstraintDefinition,
    metrics: Mapping[str, Any],
    *,
    telemetry: Telemetry | None = None,
) -> EvaluatedConstraintResult:
    if not feature_enabled():
        return EvaluatedConstraintResult(definition=definition, status=EvalStatus.UNKNOWN, details="feature_flag_disabled")

    sink = resolve(telemetry)

    if definition.kind == ConstraintKind.CONDITIONAL and not definition.activation_predicate:
        return EvaluatedConstraintResult(
            definition=definition,
            status=EvalStatus.UNSUPPORTED,
            details="missing_activation_predicate",
        )
    if definition.activation_predicate and not _activation_matched(definition.activation_predicate, metrics):
        return EvaluatedConstraintResult(
            definition=definition,
            status=EvalStatus.UNKNOWN,
            details="activation_not_matched",
            activation_matched=False,
        )

    if definition.kind == ConstraintKind.DYNAMIC:
        missing = [key for key in definition.required_context_keys if metrics.get(key) is None]
        if missing:
            return EvaluatedConstraintResult(
                definition=definition,
                status=EvalStatus.INSUFFICIENT_CONTEXT,
                details="missing_context:" + ",".join(missing),
            )

    parsed = parse_expression(definition.expression)
    if isinstance(parsed, ParseError):
        return EvaluatedConstraintResult(definition=definition, status=EvalStatus.UNSUPPORTED, details=parsed.code)

    outcomes = tuple(evaluate_clause(c, metrics, kind=definition.kind) for c in parsed.clauses)
    status = combine_statuses(o.status for o in outcomes)

    sink.counter("constraints.evaluated")
    if status == EvalStatus.VIOLATED:
        if definition.kind == ConstraintKind.HARD:
            sink.counter("constraints.violation.hard")
        else:
            sink.counter("constraints.violation.soft")

    if len(outcomes) == 1:
        only = outcomes[0]
        return EvaluatedConstraintResult(
            definition=definition,
            status=status,
            details=only.reason,
            operator=only.operator,
            value_left=only.value_left,
            value_right=only.value_right,
            clauses=outcomes,
        )
    details = "AND[" + " | ".join(f"{o.expression}:{o.status.value}" for o in outcomes) + "]"
    return EvaluatedConstraintResult(definition=definition, status=status, details=details, clauses=outcomes)


def evaluate_all(
    definitions: Iterable[ConstraintDefinition],
    metrics: Mapping[str, Any],
    *,
    telemetry: Telemetry | None = None,
) -> list[EvaluatedConstraintResult]:
    return [evaluate_constraint(d, metrics, telemetry=telemetry) for d in definitions]


def summarize_constraint_results(results: Iterable[EvaluatedConstraintResult]) -> dict[str, int]:
    summary = {"total": 0, "satisfied": 0, "violated": 0, "unknown": 0, "unsupported": 0, "insufficient": 0}
    keys = {
        EvalStatus.SATISFIED: "satisfied",
        EvalStatus.VIOLATED: "violated",
        EvalStatus.UNKNOWN: "unknown",
        EvalStatus.UNSUPPORTED: "unsupported",
        EvalStatus.INSUFFICIENT_CONTEXT: "insufficient",
    }
    for result in results:
        summary["total"] += 1
        summary[keys[result.status]] += 1
    return summary


@dataclass(frozen=True)
class ScenarioEvaluation:
    """Constraint results for one scenario, plus the scenario's objective and factors."""

    scenario_id: str
    results: tuple[EvaluatedConstraintResult, ...]
    objective_value: float | None = None
    factors: Mapping[str, Any] = field(default_factory=dict)

    @property
    def feasible(self) -> bool:
        return not any(r.is_hard_violation for r in self.results)
