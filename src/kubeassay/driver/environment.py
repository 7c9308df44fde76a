"""
Per-invocation test environment. One Environment is created for each test
run and handed to everything that needs to tag or recognise the objects
that run created.
"""

import uuid
from dataclasses import dataclass, field

from kubeassay.core.unstructured import MANAGER_NAME


@dataclass(frozen=True)
class Environment:
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    manager: str = MANAGER_NAME
