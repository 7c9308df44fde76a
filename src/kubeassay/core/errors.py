"""
KUBEASSAY ERRORS
----------------
Exception hierarchy for failures that are part of running the harness
itself, as opposed to test failures (which are recorded as Results).
"""


class KubeAssayError(Exception):
    """Base class for harness errors."""


class ResolutionError(KubeAssayError):
    """The object's kind could not be mapped to an API server resource."""

    def __init__(self, api_version: str, kind: str, reason: str = ""):
        self.api_version = api_version
        self.kind = kind
        message = f"no API resource for kind '{kind}' in '{api_version}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class HydrationError(KubeAssayError):
    """An object fragment could not be turned into a Kubernetes object."""


class RecorderStateError(KubeAssayError):
    """A recorder scope was opened or closed out of order."""


class TransportError(KubeAssayError):
    """The API server could not be reached."""
