"""
Conflict detection between intents.

Conflict rules come from backends, the engine itself knows none. A rule
compares one field of an intent of a_kind with one field of an intent of
b_kind. Fields are "target" or a parameter name. Both when predicates must
hold as plain parameter equality.

Pairs are checked in document order so the reported pair is stable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from host_orchestrator.core.types import ConflictRule, Intent


@dataclass(frozen=True)
class Conflict:
    a: Intent
    b: Intent
    rule: ConflictRule


def _field_value(intent: Intent, name: str) -> Any:
    if name == "target":
        return intent.target
    return intent.parameters.get(name)


def _when_holds(intent: Intent, when: Mapping[str, Any]) -> bool:
    return all(_field_value(intent, key) == expected for key, expected in when.items())


def rule_matches(rule: ConflictRule, a: Intent, b: Intent) -> bool:
    """Return True when intent a and intent b contradict each other under rule."""
    if a is b or a.kind != rule.a_kind or b.kind != rule.b_kind:
        return False

    a_value = _field_value(a, rule.a_field)
    b_value = _field_value(b, rule.b_field)
    if a_value is None or b_value is None:
        return False

    if isinstance(a_value, list) and not isinstance(b_value, list):
        same = b_value in a_value
    else:
        same = a_value == b_value
    if not same:
        return False

    return _when_holds(a, rule.a_when) and _when_holds(b, rule.b_when)


def find_conflicts(intents: Sequence[Intent], rules: Iterable[ConflictRule]) -> list[Conflict]:
    """Every conflicting pair, ordered by the document positions of the two intents."""
    rule_list = list(rules)
    found: list[Conflict] = []
    for a in intents:
        for b in intents:
            for rule in rule_list:
                if rule_matches(rule, a, b):
                    found.append(Conflict(a=a, b=b, rule=rule))
    found.sort(key=lambda c: (min(c.a.index, c.b.index), max(c.a.index, c.b.index)))
    return found
