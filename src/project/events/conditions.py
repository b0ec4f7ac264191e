# events/conditions.py
"""
Field visibility rules.

A rule makes one field depend on the current value of exactly one other
field. Evaluation is single hop: whether the dependency is itself visible
does not matter, only its raw stored value does.
"""
from dataclasses import dataclass
from typing import Optional

from .choices import ConditionOperator

_UNDEFINED = object()


@dataclass(frozen=True)
class ConditionalLogic:
    depends_on: str
    operator: str
    value: Optional[str] = None

    def as_json(self) -> dict:
        data = {"dependsOnFieldId": self.depends_on, "operator": self.operator}
        if self.value is not None:
            data["value"] = self.value
        return data


def parse_rule(raw) -> Optional[ConditionalLogic]:
    """Read a stored rule; anything malformed counts as no rule at all."""
    if isinstance(raw, ConditionalLogic):
        return raw
    if not isinstance(raw, dict):
        return None
    depends_on = raw.get("dependsOnFieldId")
    operator = raw.get("operator")
    if depends_on in (None, "") or operator not in ConditionOperator.values:
        return None
    value = raw.get("value")
    return ConditionalLogic(
        depends_on=str(depends_on),
        operator=operator,
        value=None if value is None else str(value),
    )


def _as_text(value) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return ""
    return str(value)


def evaluate(rule, values, fields) -> bool:
    rule = parse_rule(rule)
    if rule is None:
        return True

    known = {field.key for field in fields}
    current = values.get(rule.depends_on, _UNDEFINED) if rule.depends_on in known else _UNDEFINED

    if current is _UNDEFINED:
        # "differs from undefined" is the only reading that holds
        return rule.operator == ConditionOperator.NOT_EQUALS

    if rule.operator == ConditionOperator.EQUALS:
        return _as_text(current) == (rule.value or "")
    if rule.operator == ConditionOperator.NOT_EQUALS:
        return _as_text(current) != (rule.value or "")
    if rule.operator == ConditionOperator.CONTAINS:
        return (rule.value or "").lower() in _as_text(current).lower()
    if rule.operator == ConditionOperator.IS_CHECKED:
        return current is True
    return True


def visible_fields(fields, values):
    fields = list(fields)
    return [f for f in fields if evaluate(f.conditional_logic, values, fields)]
