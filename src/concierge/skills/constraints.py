"""Constraint expressions.

Conditions are single comparisons between two operands:

    end_time > start_time
    date >= today
    end_date >= start_date
    start_date <= today + 30
    budget <= 2000
    channel != 'sms'

An operand is a param name, ``today`` with an optional ``+ N`` / ``- N`` day
offset, a number, or a quoted string. Conditions are parsed once when a
capability is registered and evaluated against params; they are data, never
code.
"""

import operator
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta
from functools import lru_cache
from typing import Any, TypeAlias

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "<=": operator.le,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    ">": operator.gt,
}

_COMPARISON_RE = re.compile(r"^\s*(.+?)\s*(<=|>=|==|!=|<|>)\s*(.+?)\s*$")
_TODAY_RE = re.compile(r"^today(?:\s*([+-])\s*(\d+))?$", re.IGNORECASE)
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


class ConstraintSyntaxError(ValueError):
    """A condition string does not match the comparison grammar."""


@dataclass(frozen=True, slots=True)
class FieldRef:
    name: str


@dataclass(frozen=True, slots=True)
class TodayRef:
    offset_days: int = 0


Operand: TypeAlias = FieldRef | TodayRef | float | str


@dataclass(frozen=True, slots=True)
class Comparison:
    left: Operand
    op: str
    right: Operand

    @property
    def fields(self) -> list[str]:
        return [o.name for o in (self.left, self.right) if isinstance(o, FieldRef)]

    def evaluate(self, params: dict[str, Any], today: date) -> bool | None:
        """Evaluate against params.

        Returns None when a referenced param is absent (the rule does not apply
        yet) or when the two sides cannot be compared.
        """
        left = _resolve(self.left, params, today)
        right = _resolve(self.right, params, today)
        if left is None or right is None:
            return None
        left, right = _coerce_pair(left, right)
        try:
            return _OPERATORS[self.op](left, right)
        except TypeError:
            return None


def _parse_operand(token: str) -> Operand:
    token = token.strip()
    if match := _TODAY_RE.match(token):
        sign, amount = match.groups()
        offset = int(amount) if amount else 0
        return TodayRef(-offset if sign == "-" else offset)
    if _NUMBER_RE.match(token):
        return float(token)
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "'\"":
        return token[1:-1]
    if _IDENT_RE.match(token):
        return FieldRef(token)
    raise ConstraintSyntaxError(f"Unrecognized operand '{token}'")


@lru_cache(maxsize=256)
def parse_condition(text: str) -> Comparison:
    """Parse a condition string.

    Raises:
        ConstraintSyntaxError: If the text is not a single comparison.
    """
    match = _COMPARISON_RE.match(text or "")
    if not match:
        raise ConstraintSyntaxError(f"Expected '<operand> <op> <operand>', got '{text}'")
    left, op, right = match.groups()
    return Comparison(_parse_operand(left), op, _parse_operand(right))


def _resolve(operand: Operand, params: dict[str, Any], today: date) -> Any:
    if isinstance(operand, FieldRef):
        value = params.get(operand.name)
        return None if value in (None, "") else value
    if isinstance(operand, TodayRef):
        return (today + timedelta(days=operand.offset_days)).isoformat()
    return operand


def _normalize_text(value: str) -> str:
    if match := _TIME_RE.match(value):
        return f"{int(match.group(1)):02d}:{match.group(2)}"
    return value


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Bring both sides to a comparable form.

    Numbers compare numerically; ISO dates, datetimes and HH:MM times compare
    lexically once zero-padded, and a datetime compared with a date is cut
    down to its date part.
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return left, right
    if isinstance(left, int | float) and isinstance(right, int | float):
        return float(left), float(right)
    if isinstance(left, int | float) and isinstance(right, str) and _NUMBER_RE.match(right):
        return float(left), float(right)
    if isinstance(right, int | float) and isinstance(left, str) and _NUMBER_RE.match(left):
        return float(left), float(right)
    if isinstance(left, str) and isinstance(right, str):
        left, right = _normalize_text(left), _normalize_text(right)
        if len(left) == 10 and len(right) > 10 and right[10] == "T":
            right = right[:10]
        elif len(right) == 10 and len(left) > 10 and left[10] == "T":
            left = left[:10]
    return left, right


def evaluate_condition(text: str, params: dict[str, Any], today: date) -> bool | None:
    """Parse (cached) and evaluate a condition string."""
    return parse_condition(text).evaluate(params, today)
