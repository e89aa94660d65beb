"""
Shared fakes for podtail tests

Nothing here talks to a cluster: the fakes stand in for KubernetesClient and
serve scripted workloads, pods and log lines.
"""

import asyncio
import io
from types import SimpleNamespace
from typing import Dict, List, Optional, Set

import pytest
from kubernetes.client import V1LabelSelector
from rich.console import Console

from podtail.exceptions import ResolutionError, StreamError
from podtail.models import PodIdentity, Resolution, SelectorKind


class FakeKube:
    """In-memory stand-in for KubernetesClient"""

    def __init__(self,
                 pods: Optional[List[str]] = None,
                 logs: Optional[Dict[str, List[str]]] = None,
                 follow_forever: bool = True):
        self.pods: Set[str] = set(pods or [])
        self.logs = logs or {}
        self.follow_forever = follow_forever
        self.phases: Dict[str, str] = {}
        self.workloads: Dict[tuple, object] = {}
        self.labelled: Dict[str, List[str]] = {}
        self.jobs: List[object] = []
        self.errors: Dict[str, Exception] = {}
        self.broken_streams: Set[str] = set()

        self.opened: List[PodIdentity] = []
        self.closed: List[PodIdentity] = []
        self.requests: List[dict] = []
        self.list_queries: List[str] = []

    def add_workload(self, kind: SelectorKind, name: str, match_labels: Dict[str, str], pods: List[str]):
        selector = V1LabelSelector(match_labels=match_labels)
        self.workloads[(kind, name)] = SimpleNamespace(spec=SimpleNamespace(selector=selector))
        query = ",".join(f"{k}={v}" for k, v in sorted(match_labels.items()))
        self.labelled[query] = list(pods)

    def phase(self, name: str) -> str:
        return self.phases.get(name, "Running")

    async def read_workload(self, kind, namespace, name):
        if name in self.errors:
            raise self.errors[name]
        try:
            return self.workloads[(kind, name)]
        except KeyError:
            raise ResolutionError(f"{kind.value} {namespace}/{name} not found",
                                  reason=ResolutionError.NOT_FOUND)

    async def read_pod(self, namespace, name):
        if name in self.errors:
            raise self.errors[name]
        if name not in self.pods:
            raise ResolutionError(f"pod {namespace}/{name} not found", reason=ResolutionError.NOT_FOUND)
        return SimpleNamespace(metadata=SimpleNamespace(name=name),
                               status=SimpleNamespace(phase=self.phase(name)))

    async def list_pod_phases(self, namespace, label_selector):
        self.list_queries.append(label_selector)
        return {name: self.phase(name) for name in self.labelled.get(label_selector, [])}

    async def list_jobs(self, namespace):
        return list(self.jobs)

    async def stream_log_lines(self, pod, follow, container=None, tail_lines=None, since_seconds=None):
        self.opened.append(pod)
        self.requests.append({'pod': pod, 'tail_lines': tail_lines, 'since_seconds': since_seconds})
        try:
            for line in self.logs.get(pod.name, []):
                yield line
            if pod.name in self.broken_streams:
                raise StreamError(f"log stream for {pod} broke", pod=pod)
            if follow and self.follow_forever:
                await asyncio.Event().wait()
        finally:
            self.closed.append(pod)


class ScriptedResolver:
    """Resolver returning whatever pod set the test sets on ``desired``"""

    def __init__(self, *names: str, namespace: str = "ns1"):
        self.namespace = namespace
        self.desired = {PodIdentity(namespace, n) for n in names}
        self.terminated: Set[PodIdentity] = set()
        self.calls = 0

    def set(self, *names: str):
        self.desired = {PodIdentity(self.namespace, n) for n in names}

    def terminate(self, *names: str):
        self.terminated |= {PodIdentity(self.namespace, n) for n in names}

    async def resolve_all(self, selectors):
        self.calls += 1
        return Resolution(desired=set(self.desired), terminated=self.terminated & self.desired)


async def wait_until(predicate, timeout: float = 2.0):
    """Yield to the loop until ``predicate()`` is true"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def plain_console() -> Console:
    return Console(file=io.StringIO(), color_system=None, width=200, soft_wrap=True)


@pytest.fixture
def console():
    return plain_console()
