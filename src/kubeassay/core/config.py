#!/usr/bin/env python3
"""
KUBEASSAY RUN CONFIGURATION
---------------------------
Settings that shape a test run. The CLI fills these in from its flags;
everything else receives them ready-made.

Author: KubeAssay Team
"""

from dataclasses import dataclass
from typing import Optional

OUTPUT_TREE = "tree"
OUTPUT_TAP = "tap"
OUTPUT_FORMATS = (OUTPUT_TREE, OUTPUT_TAP)

TRACE_REGO = "rego"

# Rego syntax that check fragments are written in.
REGO_V0 = "v0"
REGO_V1 = "v1"
REGO_VERSIONS = (REGO_V0, REGO_V1)


@dataclass
class RunConfig:
    check_timeout: float = 30.0    # seconds to wait for a check to pass
    poll_interval: float = 0.5     # seconds between check evaluations
    preserve: bool = False         # keep objects when the document ends
    dry_run: bool = False          # simulate the cluster instead of writing to it
    trace: Optional[str] = None    # "rego" logs full evaluation traces
    opa_binary: str = "opa"
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    output: str = OUTPUT_TREE
    rego_version: str = REGO_V0

    def __post_init__(self):
        if self.check_timeout < 0:
            raise ValueError(f"check timeout must not be negative: {self.check_timeout}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll interval must be positive: {self.poll_interval}")
        if self.output not in OUTPUT_FORMATS:
            raise ValueError(f"unknown output format '{self.output}'")
        if self.trace not in (None, TRACE_REGO):
            raise ValueError(f"unknown trace target '{self.trace}'")
        if self.rego_version not in REGO_VERSIONS:
            raise ValueError(f"unknown Rego version '{self.rego_version}'")

    @property
    def trace_rego(self) -> bool:
        return self.trace == TRACE_REGO
