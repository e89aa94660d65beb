"""
Pod discovery for podtail

Turns selectors into the set of pods that currently match them. Workload
selectors take two dependent reads: the workload itself for its pod label
selector, then the matching pods. Resolution never changes streaming state.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from .exceptions import ResolutionError
from .models import TERMINAL_PHASES, PodIdentity, Resolution, Selector, SelectorKind

logger = structlog.get_logger(__name__)


def label_selector_to_string(label_selector: Any) -> str:
    """
    Render a V1LabelSelector in the API's query string form

    ``match_labels`` become ``key=value`` terms and ``match_expressions`` use the
    set-based syntax (``in``, ``notin``, bare key, ``!key``).
    """
    if label_selector is None:
        return ""

    terms: List[str] = []
    for key, value in sorted((getattr(label_selector, 'match_labels', None) or {}).items()):
        terms.append(f"{key}={value}")

    for expr in getattr(label_selector, 'match_expressions', None) or []:
        operator = expr.operator
        values = ",".join(expr.values or [])
        if operator == "In":
            terms.append(f"{expr.key} in ({values})")
        elif operator == "NotIn":
            terms.append(f"{expr.key} notin ({values})")
        elif operator == "Exists":
            terms.append(expr.key)
        elif operator == "DoesNotExist":
            terms.append(f"!{expr.key}")
        else:
            raise ResolutionError(f"unsupported selector operator '{operator}' on key '{expr.key}'")

    return ",".join(terms)


def workload_selector(kind: SelectorKind, workload: Any) -> Optional[Any]:
    """Extract the pod label selector from a workload object, or None if it has none"""
    spec = getattr(workload, 'spec', None)
    if spec is None:
        return None

    if kind == SelectorKind.CRONJOB:
        job_template = getattr(spec, 'job_template', None)
        job_spec = getattr(job_template, 'spec', None)
        return getattr(job_spec, 'selector', None)

    return getattr(spec, 'selector', None)


def owned_by(obj: Any, kind: str, name: str) -> bool:
    """True if one of the object's owner references points at kind/name"""
    metadata = getattr(obj, 'metadata', None)
    for ref in getattr(metadata, 'owner_references', None) or []:
        if ref.kind == kind and ref.name == name:
            return True
    return False


def pod_phase(pod: Any) -> Optional[str]:
    """The pod's status phase (Pending, Running, Succeeded, Failed, Unknown) if reported"""
    return getattr(getattr(pod, 'status', None), 'phase', None)


class ResourceResolver:
    """Resolves selectors to pod identities through a Kubernetes client"""

    def __init__(self, kube):
        """
        Args:
            kube: Object providing read_workload, read_pod, list_pod_phases and
                list_jobs coroutines (normally a KubernetesClient)
        """
        self.kube = kube

    async def resolve(self, selector: Selector) -> Set[PodIdentity]:
        """
        Resolve one selector to the pods it currently matches

        Raises:
            ResolutionError: If the resource is missing, forbidden or unreachable
        """
        return set(await self.resolve_phases(selector))

    async def resolve_phases(self, selector: Selector) -> Dict[PodIdentity, Optional[str]]:
        """
        Like resolve(), but maps every matching pod to its phase

        Raises:
            ResolutionError: If the resource cannot be resolved for any reason
        """
        try:
            if selector.kind == SelectorKind.POD:
                pod = await self.kube.read_pod(selector.namespace, selector.name)
                return {PodIdentity(selector.namespace, selector.name): pod_phase(pod)}

            workload = await self.kube.read_workload(selector.kind, selector.namespace, selector.name)
            label_selector = workload_selector(selector.kind, workload)

            if label_selector is None and selector.kind == SelectorKind.CRONJOB:
                return await self._resolve_cronjob_jobs(selector)

            return await self._pods_matching(selector.namespace, label_selector, str(selector))
        except ResolutionError as e:
            raise e.with_selector(selector) from e.__cause__
        except Exception as e:
            logger.exception("Unexpected error resolving selector", selector=str(selector))
            raise ResolutionError(f"unexpected error resolving {selector}: {e!r}",
                                  reason=ResolutionError.API_ERROR, selector=selector) from e

    async def _pods_matching(self,
                             namespace: str,
                             label_selector: Any,
                             owner: str) -> Dict[PodIdentity, Optional[str]]:
        query = label_selector_to_string(label_selector)
        if not query:
            # An empty selector would match every pod in the namespace
            raise ResolutionError(f"{owner} has no pod selector", reason=ResolutionError.NOT_FOUND)

        phases = await self.kube.list_pod_phases(namespace, query)
        return {PodIdentity(namespace, name): phase for name, phase in phases.items()}

    async def _resolve_cronjob_jobs(self, selector: Selector) -> Dict[PodIdentity, Optional[str]]:
        """Pods of every Job spawned by a CronJob whose template carries no selector"""
        jobs = [job for job in await self.kube.list_jobs(selector.namespace)
                if owned_by(job, "CronJob", selector.name)]

        pods: Dict[PodIdentity, Optional[str]] = {}
        for job in jobs:
            job_selector = workload_selector(SelectorKind.JOB, job)
            if job_selector is None:
                continue
            pods.update(await self._pods_matching(selector.namespace, job_selector,
                                                  f"job/{selector.namespace}/{job.metadata.name}"))

        logger.debug("Resolved cronjob through owned jobs",
                     cronjob=str(selector), jobs=len(jobs), pods=len(pods))
        return pods

    async def resolve_all(self, selectors: Iterable[Selector]) -> Resolution:
        """
        Resolve every selector concurrently and union the results

        A failing selector is logged and skipped so the others still count.
        Pods in a terminal phase are reported in ``terminated`` as well as in
        ``desired``.
        """
        selectors = list(selectors)
        results = await asyncio.gather(*(self.resolve_phases(s) for s in selectors),
                                       return_exceptions=True)

        resolution = Resolution()
        for selector, result in zip(selectors, results):
            if isinstance(result, ResolutionError):
                resolution.failures[selector] = result
                logger.warning("Failed to resolve selector",
                               selector=str(selector), reason=result.reason, error=str(result))
            elif isinstance(result, BaseException):
                raise result
            else:
                resolution.desired.update(result)
                resolution.terminated.update(p for p, phase in result.items() if phase in TERMINAL_PHASES)

        return resolution
