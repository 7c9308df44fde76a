#!/usr/bin/env python3
"""
KUBEASSAY OBJECT HYDRATOR
-------------------------
Turns the raw text of an object fragment into an Object the runner can
apply: special `$` operations are lifted out of the document, tracking
metadata is injected and any attached check is compiled up front.

Hydration never talks to the cluster.

Author: KubeAssay Team
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from kubeassay.core.errors import HydrationError
from kubeassay.core.models import ObjectOperation
from kubeassay.core.unstructured import ANNOTATION_RUN_ID, LABEL_MANAGED_BY, Unstructured, dig
from kubeassay.document.fragment import Fragment, InvalidFragmentError, new_module_fragment
from kubeassay.driver.environment import Environment
from kubeassay.policy.runtime import PolicyRuntime

logger = logging.getLogger("kubeassay.driver")

SPECIAL_OP_SIGIL = "$"
OP_APPLY = "$apply"
OP_CHECK = "$check"


@dataclass
class Object:
    """A hydrated object fragment."""
    target: Unstructured
    operation: ObjectOperation = ObjectOperation.UPDATE
    check: Optional[Fragment] = None


def extract_special_ops(content: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Splits top-level keys beginning with `$` out of the document. Returns
    the remaining document and the extracted operations.
    """
    ops = {}
    keep = {}
    for key, value in content.items():
        if isinstance(key, str) and key.startswith(SPECIAL_OP_SIGIL):
            ops[key] = value
        else:
            keep[key] = value
    return keep, ops


def inject_metadata(obj: Unstructured, env: Environment):
    """
    Labels the object as managed by the harness and annotates it with the
    run ID. Objects with a pod template get the same treatment in the
    template so that the pods they spawn can be traced back to this run.
    """
    obj.set_label(LABEL_MANAGED_BY, env.manager)
    obj.set_annotation(ANNOTATION_RUN_ID, env.run_id)

    template = dig(obj.content, "spec", "template")
    if not isinstance(template, dict) or dig(template, "spec", "containers") is None:
        return

    meta = template.get("metadata")
    if not isinstance(meta, dict):
        meta = {}
        template["metadata"] = meta
    nested = Unstructured({"metadata": meta})
    nested.set_label(LABEL_MANAGED_BY, env.manager)
    nested.set_annotation(ANNOTATION_RUN_ID, env.run_id)


def operation_for(value: Any) -> ObjectOperation:
    if value is None:
        return ObjectOperation.UPDATE
    try:
        return ObjectOperation(str(value).strip().lower())
    except ValueError:
        logger.error("invalid %s operation '%s', defaulting to '%s'",
                     OP_APPLY, value, ObjectOperation.UPDATE)
        return ObjectOperation.UPDATE


def hydrate(data: str, env: Environment, runtime: PolicyRuntime) -> Object:
    """Builds an Object from fragment text. Raises HydrationError."""
    try:
        content = YAML(typ="safe", pure=True).load(data)
    except YAMLError as e:
        raise HydrationError(f"failed to parse object: {e}") from e

    if not isinstance(content, dict):
        raise HydrationError("object fragment is not a YAML mapping")

    content, ops = extract_special_ops(content)
    target = Unstructured(content)
    inject_metadata(target, env)

    obj = Object(target=target, operation=operation_for(ops.get(OP_APPLY)))

    check = ops.get(OP_CHECK)
    if check is not None:
        try:
            obj.check = new_module_fragment(runtime, str(check))
        except InvalidFragmentError as e:
            raise HydrationError(f"invalid {OP_CHECK}: {e}") from e

    return obj
