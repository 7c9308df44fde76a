#!/usr/bin/env python3
"""
KUBEASSAY FRAGMENTS
-------------------
A Fragment is one separator-delimited slice of a test document. Its
content type is not known up front: it is worked out lazily, once, by
trying to decode it as a Kubernetes object and then as a Rego module.

Author: KubeAssay Team
"""

import logging
from enum import Enum
from typing import Optional, Tuple

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from kubeassay.core.models import Location
from kubeassay.core.unstructured import Unstructured
from kubeassay.policy.runtime import PolicyError, PolicyModule, PolicyRuntime, parse_check_fragment

logger = logging.getLogger("kubeassay.document")


class FragmentType(Enum):
    UNKNOWN = "unknown"
    INVALID = "invalid"
    OBJECT = "Kubernetes"
    MODULE = "Rego"

    def __str__(self) -> str:
        return self.value


class InvalidFragmentError(Exception):
    """A fragment looked like `expected` but could not be used as one."""

    def __init__(self, expected: FragmentType, cause: Exception):
        super().__init__(f"invalid {expected} fragment: {cause}")
        self.expected = expected
        self.cause = cause


def decode_object(text: str) -> Optional[Unstructured]:
    """
    Decodes YAML or JSON into an object. Returns None unless the result is
    a mapping carrying both an API version and a kind.
    """
    try:
        content = YAML(typ="safe", pure=True).load(text)
    except YAMLError:
        return None

    if not isinstance(content, dict):
        return None
    if not content.get("apiVersion") or not content.get("kind"):
        return None
    return Unstructured(content)


class Fragment:
    """A parseable portion of a Document."""

    def __init__(self, data: str, location: Optional[Location] = None):
        self.data = data
        self.location = location or Location(0, 0)
        self.type = FragmentType.UNKNOWN

        self._object: Optional[Unstructured] = None
        self._module: Optional[PolicyModule] = None
        self._decoded: Optional[Tuple[FragmentType, Optional[Exception]]] = None

    def __repr__(self) -> str:
        return f"Fragment({self.type}, {self.location})"

    def object(self) -> Optional[Unstructured]:
        """The decoded Kubernetes object, if this is an object fragment."""
        return self._object if self.type is FragmentType.OBJECT else None

    def module(self) -> Optional[PolicyModule]:
        """The compiled Rego module, if this is a module fragment."""
        return self._module if self.type is FragmentType.MODULE else None

    def decode(self, runtime: PolicyRuntime) -> Tuple[FragmentType, Optional[Exception]]:
        """
        Classifies the fragment. The outcome is memoized, so decoding is
        attempted (and Rego compiled) at most once per fragment.
        """
        if self._decoded is None:
            self._decoded = self._classify(runtime)
            self.type = self._decoded[0]
        return self._decoded

    def _classify(self, runtime: PolicyRuntime) -> Tuple[FragmentType, Optional[Exception]]:
        obj = decode_object(self.data)
        if obj is not None:
            self._object = obj
            return FragmentType.OBJECT, None

        try:
            module = parse_check_fragment(runtime, self.data)
        except PolicyError as e:
            # Not an object, and not valid Rego either. Surface the Rego
            # error rather than quietly treating the fragment as unknown.
            return FragmentType.INVALID, InvalidFragmentError(FragmentType.MODULE, e)

        # Bare YAML scalars and comments parse as Rego with no rules.
        if not module.rules:
            return FragmentType.UNKNOWN, None

        try:
            runtime.compile(module)
        except PolicyError as e:
            return FragmentType.INVALID, InvalidFragmentError(FragmentType.MODULE, e)

        self._module = module
        return FragmentType.MODULE, None


def new_module_fragment(runtime: PolicyRuntime, text: str) -> Fragment:
    """
    Builds a fragment from Rego text, failing with InvalidFragmentError
    unless it decodes to a module with at least one rule.
    """
    fragment = Fragment(text, Location(1, text.count("\n") + 1))
    ftype, err = fragment.decode(runtime)
    if err is not None:
        raise err
    if ftype is not FragmentType.MODULE:
        raise InvalidFragmentError(FragmentType.MODULE, ValueError("no Rego rules found"))
    return fragment
