"""
Exception hierarchy for podtail

Errors are split by who can recover from them:
- ResolutionError: a selector could not be resolved this cycle, retried next cycle
- StreamError: one pod's log stream broke, the pod is re-resolved next cycle
- WriterError: the console cannot be written to, fatal
- ConfigurationError / KubernetesConnectionError: rejected before streaming starts
"""

from typing import Optional


class PodtailError(Exception):
    """Base exception for podtail errors"""


class ConfigurationError(PodtailError):
    """Invalid or incomplete configuration"""


class KubernetesConnectionError(PodtailError):
    """Kubernetes configuration could not be loaded or the cluster is unreachable"""


class ResolutionError(PodtailError):
    """A selector could not be resolved to a set of pods"""

    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    API_ERROR = "api_error"
    UNREACHABLE = "unreachable"

    def __init__(self, message: str, reason: str = API_ERROR, selector=None):
        super().__init__(message)
        self.reason = reason
        self.selector = selector

    def with_selector(self, selector) -> "ResolutionError":
        """Return a copy of this error attributed to ``selector``"""
        error = ResolutionError(str(self), reason=self.reason, selector=selector)
        error.__cause__ = self.__cause__
        return error

    @property
    def is_transient(self) -> bool:
        return self.reason in (self.API_ERROR, self.UNREACHABLE)


class StreamError(PodtailError):
    """A pod log stream could not be opened or broke mid-stream"""

    def __init__(self, message: str, pod: Optional[object] = None):
        super().__init__(message)
        self.pod = pod


class WriterError(PodtailError):
    """Output could not be written to the console"""
