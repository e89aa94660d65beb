"""
Kubernetes API access for podtail

Wraps the blocking ``kubernetes`` client so every call runs in an executor
thread, and translates API failures into ResolutionError / StreamError.
Log streams read through a dedicated single-thread executor each, so a large
number of followed pods cannot exhaust the shared default pool.
"""

import asyncio
import codecs
import functools
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional

import structlog
import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from .exceptions import KubernetesConnectionError, ResolutionError, StreamError
from .models import PodIdentity, SelectorKind

logger = structlog.get_logger(__name__)

_EOF = object()

MAX_LINE_LENGTH = 64 * 1024


def translate_api_error(error: Exception, what: str) -> ResolutionError:
    """Map a client exception onto a ResolutionError with a stable reason"""
    if isinstance(error, ApiException):
        if error.status == 404:
            return ResolutionError(f"{what} not found", reason=ResolutionError.NOT_FOUND)
        if error.status in (401, 403):
            return ResolutionError(f"access to {what} forbidden ({error.status})",
                                   reason=ResolutionError.FORBIDDEN)
        return ResolutionError(f"API error reading {what}: {error.status} {error.reason}",
                               reason=ResolutionError.API_ERROR)
    return ResolutionError(f"cannot reach API server reading {what}: {error}",
                           reason=ResolutionError.UNREACHABLE)


def iter_log_lines(chunks: Iterable[bytes], max_line_length: int = MAX_LINE_LENGTH) -> Iterator[str]:
    """
    Split a stream of byte chunks into decoded lines, flushing any trailing partial line

    A partial line that grows past ``max_line_length`` characters without a
    newline is emitted in pieces of that size.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    for chunk in chunks:
        text = decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            continue
        lines = (pending + text).split("\n")
        pending = lines.pop()
        for line in lines:
            yield line.rstrip("\r")
        while len(pending) > max_line_length:
            yield pending[:max_line_length]
            pending = pending[max_line_length:]
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


class KubernetesClient:
    """Thin async facade over the CoreV1, AppsV1 and BatchV1 APIs"""

    def __init__(self,
                 core: client.CoreV1Api,
                 apps: client.AppsV1Api,
                 batch: client.BatchV1Api,
                 request_timeout: float = 10.0):
        self.core = core
        self.apps = apps
        self.batch = batch
        self.request_timeout = request_timeout

    @classmethod
    async def connect(cls,
                      kubeconfig_path: Optional[str] = None,
                      context: Optional[str] = None,
                      request_timeout: float = 10.0) -> "KubernetesClient":
        """
        Load kube configuration and build the API clients

        Falls back to in-cluster configuration when no kubeconfig is given and
        the default one cannot be loaded.

        Raises:
            KubernetesConnectionError: If no usable configuration is found
        """
        def _load():
            if kubeconfig_path or context:
                config_file = os.path.expanduser(kubeconfig_path) if kubeconfig_path else None
                config.load_kube_config(config_file=config_file, context=context)
            else:
                try:
                    config.load_kube_config()
                except ConfigException:
                    config.load_incluster_config()
            return client.CoreV1Api(), client.AppsV1Api(), client.BatchV1Api()

        loop = asyncio.get_running_loop()
        try:
            core, apps, batch = await loop.run_in_executor(None, _load)
        except (ConfigException, OSError) as e:
            raise KubernetesConnectionError(f"Failed to load Kubernetes configuration: {e}") from e

        logger.info("Loaded Kubernetes configuration", kubeconfig=kubeconfig_path, context=context)
        return cls(core, apps, batch, request_timeout=request_timeout)

    async def _call(self, what: str, func, *args, **kwargs) -> Any:
        """Run a blocking API call in the default executor, translating failures"""
        kwargs.setdefault('_request_timeout', self.request_timeout)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            raise translate_api_error(e, what) from e

    async def read_workload(self, kind: SelectorKind, namespace: str, name: str) -> Any:
        """Read a Deployment, StatefulSet, DaemonSet, Job or CronJob"""
        readers = {
            SelectorKind.DEPLOYMENT: self.apps.read_namespaced_deployment,
            SelectorKind.STATEFULSET: self.apps.read_namespaced_stateful_set,
            SelectorKind.DAEMONSET: self.apps.read_namespaced_daemon_set,
            SelectorKind.JOB: self.batch.read_namespaced_job,
            SelectorKind.CRONJOB: self.batch.read_namespaced_cron_job,
        }
        if kind not in readers:
            raise ValueError(f"{kind.value} is not a workload kind")
        return await self._call(f"{kind.value} {namespace}/{name}", readers[kind],
                                name=name, namespace=namespace)

    async def read_pod(self, namespace: str, name: str) -> Any:
        return await self._call(f"pod {namespace}/{name}", self.core.read_namespaced_pod,
                                name=name, namespace=namespace)

    async def list_pod_phases(self, namespace: str, label_selector: str) -> Dict[str, Optional[str]]:
        """Map the name of each pod in ``namespace`` matching ``label_selector`` to its phase"""
        pod_list = await self._call(f"pods in {namespace} matching '{label_selector}'",
                                    self.core.list_namespaced_pod,
                                    namespace=namespace, label_selector=label_selector)
        return {pod.metadata.name: pod.status.phase if pod.status else None
                for pod in pod_list.items}

    async def list_jobs(self, namespace: str) -> List[Any]:
        job_list = await self._call(f"jobs in {namespace}", self.batch.list_namespaced_job,
                                    namespace=namespace)
        return list(job_list.items)

    async def default_container(self, pod: PodIdentity) -> str:
        """Name of the first container in the pod spec"""
        try:
            spec = (await self.read_pod(pod.namespace, pod.name)).spec
        except ResolutionError as e:
            raise StreamError(str(e), pod=pod) from e
        if not spec or not spec.containers:
            raise StreamError(f"pod {pod} has no containers", pod=pod)
        return spec.containers[0].name

    async def stream_log_lines(self,
                               pod: PodIdentity,
                               follow: bool,
                               container: Optional[str] = None,
                               tail_lines: Optional[int] = None,
                               since_seconds: Optional[int] = None) -> AsyncIterator[str]:
        """
        Yield log lines from one container of a pod

        With ``follow`` the generator only ends when the server closes the
        stream. Closing the generator (or cancelling the task iterating it)
        closes the HTTP response, which unblocks and abandons the reader thread.

        Raises:
            StreamError: If the stream cannot be opened or breaks mid-stream
        """
        container = container or await self.default_container(pod)

        params = {'follow': follow, 'container': container, '_preload_content': False}
        if tail_lines is not None:
            params['tail_lines'] = tail_lines
        if since_seconds is not None:
            params['since_seconds'] = since_seconds

        loop = asyncio.get_running_loop()
        try:
            resp = await loop.run_in_executor(
                None,
                functools.partial(self.core.read_namespaced_pod_log,
                                  name=pod.name, namespace=pod.namespace, **params),
            )
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            raise StreamError(f"cannot open log stream for {pod}/{container}: {e}", pod=pod) from e

        logger.debug("Opened log stream", pod=str(pod), container=container, follow=follow)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"podtail-{pod.name}")
        lines = iter_log_lines(resp.stream(decode_content=True))
        try:
            while True:
                try:
                    line = await loop.run_in_executor(executor, next, lines, _EOF)
                except (urllib3.exceptions.HTTPError, OSError) as e:
                    raise StreamError(f"log stream for {pod} broke: {e}", pod=pod) from e
                if line is _EOF:
                    return
                yield line
        finally:
            resp.close()
            resp.release_conn()
            executor.shutdown(wait=False)

    async def test_connection(self) -> bool:
        """Check the API server answers a cheap request"""
        try:
            await self._call("API versions", client.VersionApi(self.core.api_client).get_code)
        except ResolutionError as e:
            logger.error("Kubernetes connection test failed", error=str(e), reason=e.reason)
            return False

        logger.info("Kubernetes connection test successful")
        return True
