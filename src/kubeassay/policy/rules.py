"""
Rule-naming conventions that turn Rego rules into test assertions.

A rule participates in a check only if its name is one of the severity
classes below, either exactly or as a `<class>_` prefix.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from kubeassay.core.models import Severity


@dataclass(frozen=True)
class RuleClass:
    name: str
    prefix: str
    severity: Severity


RULE_CLASSES = [
    RuleClass("warn", "warn_", Severity.WARN),
    RuleClass("error", "error_", Severity.ERROR),
    RuleClass("fatal", "fatal_", Severity.FATAL),
    # Skip rules abandon the document without failing it.
    RuleClass("skip", "skip_", Severity.SKIP),
]


def match_rule(name: str) -> Optional[RuleClass]:
    for rule in RULE_CLASSES:
        if name == rule.name or name.startswith(rule.prefix):
            return rule
    return None


def severity_for_rule(name: str) -> Severity:
    rule = match_rule(name)
    return rule.severity if rule else Severity.NONE


def assertion_rules(names: Iterable[str]) -> List[str]:
    """
    The unique rule names worth querying, in first-seen order. The same
    name may appear many times since Rego rules can have multiple bodies.
    """
    found = []
    for name in names:
        if severity_for_rule(name) is Severity.NONE or name in found:
            continue
        found.append(name)
    return found
