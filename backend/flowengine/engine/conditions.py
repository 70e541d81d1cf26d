# /flowengine/engine/conditions.py

"""
Condition mini-language: `<identifier> <op> <literal>`.

The parser is total: it returns either a Comparison or an Unparseable value
and never raises. Evaluation of an Unparseable expression is a deliberate
no-match.

- Identifiers are variable names, optionally dotted into nested values.
- `==` / `!=` compare string forms. An unset identifier compares as the
  empty string, never as the text "undefined": with `x` unset, `x == ""`
  is true and `x == undefined` is false.
- `>`, `<`, `>=`, `<=` coerce both sides to numbers; anything that does not
  coerce (including an unset variable) makes the comparison false.
- Literals may be bare or wrapped in matching single or double quotes.
"""

import math
import operator
import re
from dataclasses import dataclass
from typing import Any, Mapping, Union

from flowengine.engine.variables import MISSING, VariableStore, stringify

EXPRESSION_RE = re.compile(
    r"^\s*(?P<identifier>[A-Za-z_]\w*(?:\.\w+)*)\s*(?P<op>==|!=|>=|<=|>|<)\s*(?P<literal>.*?)\s*$"
)

RELATIONAL_OPERATORS = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}


@dataclass(frozen=True)
class Comparison:
    identifier: str
    operator: str
    literal: str


@dataclass(frozen=True)
class Unparseable:
    expression: Any
    reason: str


def _unquote(literal: str) -> str | None:
    if len(literal) >= 2 and literal[0] == literal[-1] and literal[0] in ("'", '"'):
        return literal[1:-1]
    if not literal or literal[0] in ("'", '"') or literal[-1] in ("'", '"'):
        return None
    return literal


def parse_condition(expression: Any) -> Union[Comparison, Unparseable]:
    if not isinstance(expression, str) or not expression.strip():
        return Unparseable(expression, "empty expression")

    match = EXPRESSION_RE.match(expression)
    if not match:
        return Unparseable(expression, "expected '<identifier> <op> <literal>'")

    literal = _unquote(match.group("literal"))
    if literal is None:
        return Unparseable(expression, "missing or unbalanced literal")

    return Comparison(match.group("identifier"), match.group("op"), literal)


def to_number(value: Any) -> float:
    if value is MISSING or value is None or isinstance(value, (dict, list)):
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        return float(str(value).strip())
    except ValueError:
        return math.nan


def evaluate_comparison(comparison: Comparison, variables: Union[VariableStore, Mapping[str, Any]]) -> bool:
    store = variables if isinstance(variables, VariableStore) else VariableStore(dict(variables))
    actual = store.lookup(comparison.identifier)

    if comparison.operator in ("==", "!="):
        actual_text = "" if actual is MISSING else stringify(actual)
        equal = actual_text == comparison.literal
        return equal if comparison.operator == "==" else not equal

    left, right = to_number(actual), to_number(comparison.literal)
    if math.isnan(left) or math.isnan(right):
        return False
    return RELATIONAL_OPERATORS[comparison.operator](left, right)


def evaluate_condition(expression: Any, variables: Union[VariableStore, Mapping[str, Any]]) -> bool:
    parsed = parse_condition(expression)
    if isinstance(parsed, Unparseable):
        return False
    return evaluate_comparison(parsed, variables)
