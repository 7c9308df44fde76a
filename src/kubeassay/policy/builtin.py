"""
Built-in Rego checks run after an object operation that has no `$check`
of its own. The check input is the operation result:

    {"error": <Status or null>, "latest": <object or null>, "target": {...}}
"""

from kubeassay.core.config import REGO_V0, REGO_V1
from kubeassay.core.models import ObjectOperation

RULE_HEAD_V0 = "error[msg] {"
RULE_HEAD_V1 = "error contains msg if {"

OBJECT_UPDATE_CHECK = """
error[msg] {
    status := input.error
    status != null
    msg := sprintf("%s: %s", [
        object.get(status, "reason", "Failure"),
        object.get(status, "message", "object update failed"),
    ])
}
"""

OBJECT_DELETE_CHECK = """
error[msg] {
    status := input.error
    status != null
    object.get(status, "reason", "") != "NotFound"
    msg := sprintf("%s: %s", [
        object.get(status, "reason", "Failure"),
        object.get(status, "message", "object delete failed"),
    ])
}
"""


def check_source_for(operation: ObjectOperation, rego_version: str = REGO_V0) -> str:
    source = OBJECT_DELETE_CHECK if operation is ObjectOperation.DELETE else OBJECT_UPDATE_CHECK
    if rego_version == REGO_V1:
        source = source.replace(RULE_HEAD_V0, RULE_HEAD_V1)
    return source
