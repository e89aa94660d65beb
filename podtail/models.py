"""
Core data types shared by the resolver, streamers, supervisor and writer
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple


class SelectorKind(Enum):
    """Kinds of resources a selector can name"""
    POD = "pod"
    DEPLOYMENT = "deployment"
    STATEFULSET = "statefulset"
    DAEMONSET = "daemonset"
    JOB = "job"
    CRONJOB = "cronjob"


@dataclass(frozen=True)
class Selector:
    """A user supplied criterion identifying pods, scoped to one namespace"""

    kind: SelectorKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


@dataclass(frozen=True, order=True)
class PodIdentity:
    """Key of an active stream. Name only, pod UIDs are not tracked."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class LogEvent:
    """One raw log line on its way from a streamer to the writer"""

    pod: PodIdentity
    line: str
    received_at: datetime = field(default_factory=datetime.now)


DEFAULT_PALETTE: Tuple[str, ...] = (
    "cyan",
    "magenta",
    "green",
    "yellow",
    "blue",
    "bright_cyan",
    "bright_magenta",
    "bright_green",
    "bright_yellow",
    "bright_blue",
)


@dataclass(frozen=True)
class FormattingPolicy:
    """How lines are filtered and rendered. Fixed for the process lifetime."""

    filter_text: str = ""
    json_format: bool = False
    palette: Tuple[str, ...] = DEFAULT_PALETTE


class StreamOutcome(Enum):
    """How a pod streamer ended"""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Pod phases after which no container runs again
TERMINAL_PHASES = frozenset({"Succeeded", "Failed"})


@dataclass
class Resolution:
    """Result of resolving every selector once"""

    desired: Set[PodIdentity] = field(default_factory=set)
    failures: Dict[Selector, Exception] = field(default_factory=dict)
    terminated: Set[PodIdentity] = field(default_factory=set)


@dataclass
class ReconcileResult:
    """Summary of one discovery cycle"""

    desired: Set[PodIdentity]
    started: List[PodIdentity] = field(default_factory=list)
    stopped: List[PodIdentity] = field(default_factory=list)
    failed_selectors: Dict[Selector, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.started or self.stopped)

    def to_dict(self) -> Dict[str, object]:
        """Convert to a dictionary suitable for structured logging"""
        return {
            'desired': sorted(str(p) for p in self.desired),
            'started': [str(p) for p in self.started],
            'stopped': [str(p) for p in self.stopped],
            'failed_selectors': {str(s): r for s, r in self.failed_selectors.items()},
        }


def build_selectors(namespace: str,
                    pods: Optional[List[str]] = None,
                    deployments: Optional[List[str]] = None,
                    statefulsets: Optional[List[str]] = None,
                    daemonsets: Optional[List[str]] = None,
                    jobs: Optional[List[str]] = None,
                    cronjobs: Optional[List[str]] = None) -> List[Selector]:
    """Build the selector list for one namespace, dropping duplicates but keeping order"""
    groups = [
        (SelectorKind.POD, pods),
        (SelectorKind.DEPLOYMENT, deployments),
        (SelectorKind.STATEFULSET, statefulsets),
        (SelectorKind.DAEMONSET, daemonsets),
        (SelectorKind.JOB, jobs),
        (SelectorKind.CRONJOB, cronjobs),
    ]
    selectors: List[Selector] = []
    for kind, names in groups:
        for name in names or []:
            selector = Selector(kind=kind, namespace=namespace, name=name)
            if selector not in selectors:
                selectors.append(selector)
    return selectors
