"""
Main entry point for podtail
Provides the CLI and wires discovery, streaming and output together
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import structlog
from rich.console import Console

from . import __version__
from .config import AppConfig, load_config, save_example_config
from .exceptions import ConfigurationError, KubernetesConnectionError, WriterError
from .formatter import ColorRegistry, LogLineFormatter
from .kube_client import KubernetesClient
from .resolver import ResourceResolver
from .supervisor import StreamSupervisor
from .writer import OutputWriter

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)
# Status messages go to stderr, stdout carries the pod logs
console = Console(stderr=True)


def configure_logging(log_level: str, debug: bool = False) -> None:
    """Route stdlib logging (and so structlog) to stderr at the configured level"""
    level = logging.DEBUG if debug else getattr(logging, log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, stream=sys.stderr, format="%(message)s")
    logging.getLogger().setLevel(level)

    if not debug:
        logging.getLogger("kubernetes").setLevel(logging.WARNING)
        logging.getLogger("urllib3").setLevel(logging.WARNING)


class PodTailApp:
    """Main application class"""

    def __init__(self, config: AppConfig, output: Optional[Console] = None):
        self.config = config
        self.output = output

    def build(self, kube) -> tuple:
        """Assemble supervisor and writer around a Kubernetes client"""
        stream = self.config.stream
        selectors = self.config.validate_for_streaming()
        policy = stream.formatting_policy()
        colors = ColorRegistry(policy.palette)

        supervisor = StreamSupervisor(
            ResourceResolver(kube),
            kube,
            selectors,
            follow=stream.follow,
            refresh_interval=stream.refresh_interval,
            colors=colors,
            channel_capacity=stream.channel_capacity,
            container=stream.container,
            tail_lines=stream.tail_lines,
            since_seconds=stream.since_seconds,
            shutdown_timeout=stream.shutdown_timeout,
        )
        writer = OutputWriter(supervisor.channel, LogLineFormatter(policy), colors, console=self.output)
        return supervisor, writer

    async def run(self) -> None:
        """Connect to the cluster and tail until done or interrupted"""
        self.config.validate_for_streaming()
        cluster = self.config.cluster
        kube = await KubernetesClient.connect(
            kubeconfig_path=cluster.kubeconfig_path,
            context=cluster.context,
            request_timeout=cluster.request_timeout,
        )
        supervisor, writer = self.build(kube)
        await run_session(supervisor, writer)


def _install_signal_handlers(supervisor: StreamSupervisor) -> None:
    loop = asyncio.get_running_loop()

    def _on_signal():
        console.print("\n[yellow]Shutdown signal received, stopping...[/yellow]")
        supervisor.stop()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _on_signal)
        except (NotImplementedError, RuntimeError):
            # No loop signal support on this platform, or not in the main thread
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(_on_signal))


async def run_session(supervisor: StreamSupervisor,
                      writer: OutputWriter,
                      install_signals: bool = True) -> None:
    """
    Run discovery and output until the supervisor finishes, then flush

    Raises:
        WriterError: As soon as the writer fails, after cancelling all streams
    """
    if install_signals:
        _install_signal_handlers(supervisor)

    writer_task = asyncio.ensure_future(writer.run())
    supervisor_task = asyncio.ensure_future(supervisor.run())
    drain_task = None
    try:
        done, _ = await asyncio.wait({writer_task, supervisor_task}, return_when=asyncio.FIRST_COMPLETED)
        if writer_task in done:
            writer_task.result()
        supervisor_task.result()

        # Nothing new can arrive once every stream is stopped
        await supervisor.shutdown()

        drain_task = asyncio.ensure_future(writer.drain())
        done, _ = await asyncio.wait({writer_task, drain_task}, return_when=asyncio.FIRST_COMPLETED)
        if writer_task in done:
            writer_task.result()
    finally:
        for task in (supervisor_task, drain_task, writer_task):
            if task is not None and not task.done():
                task.cancel()
        await supervisor.shutdown()
        await asyncio.gather(*(t for t in (supervisor_task, drain_task, writer_task) if t is not None),
                             return_exceptions=True)

    logger.info("Tail session finished", lines_written=writer.lines_written,
                lines_filtered=writer.lines_filtered)


# CLI Commands

@click.group()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.version_option(version=__version__, prog_name='podtail')
@click.pass_context
def cli(ctx, config, debug):
    """podtail - tail logs from many Kubernetes pods at once"""
    try:
        app_config = load_config(config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        console.print("Try running 'podtail init-config' to create a sample configuration.")
        sys.exit(1)

    if debug:
        app_config.debug = True
        app_config.log_level = "DEBUG"

    configure_logging(app_config.log_level, app_config.debug)

    ctx.ensure_object(dict)
    ctx.obj['config'] = app_config


@cli.command()
@click.option('--output', '-o', type=click.Path(), default='podtail.yaml',
              help='Output path for example configuration')
def init_config(output):
    """Generate example configuration file"""
    try:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        save_example_config(output)
    except OSError as e:
        console.print(f"[red]Failed to create configuration: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]Example configuration saved to {output}[/green]")


@cli.command()
@click.option('--kubeconfig', type=click.Path(), help='Path to kubeconfig file')
@click.option('--context', help='Kubernetes context to use')
@click.pass_context
def test(ctx, kubeconfig, context):
    """Test the connection to the Kubernetes API"""
    cluster = ctx.obj['config'].cluster

    async def run_test():
        kube = await KubernetesClient.connect(
            kubeconfig_path=kubeconfig or cluster.kubeconfig_path,
            context=context or cluster.context,
            request_timeout=cluster.request_timeout,
        )
        return await kube.test_connection()

    try:
        success = asyncio.run(run_test())
    except KubernetesConnectionError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if success:
        console.print("[green]Kubernetes: connected[/green]")
    else:
        console.print("[red]Kubernetes: connection failed[/red]")
    sys.exit(0 if success else 1)


@cli.command()
@click.option('--namespace', '-n', help='Namespace to tail pods in')
@click.option('--pod', '-p', 'pods', multiple=True, help='Pod name (repeatable)')
@click.option('--deployment', '-d', 'deployments', multiple=True, help='Deployment name (repeatable)')
@click.option('--statefulset', '-s', 'statefulsets', multiple=True, help='StatefulSet name (repeatable)')
@click.option('--daemonset', 'daemonsets', multiple=True, help='DaemonSet name (repeatable)')
@click.option('--job', '-j', 'jobs', multiple=True, help='Job name (repeatable)')
@click.option('--cronjob', 'cronjobs', multiple=True, help='CronJob name (repeatable)')
@click.option('--follow', '-f', is_flag=True, help='Follow log output')
@click.option('--filter', 'filter_text', help='Only show lines containing this text')
@click.option('--json', 'json_format', is_flag=True, help='Pretty-print JSON log lines')
@click.option('--refresh-interval', '-r', type=click.FloatRange(min=0),
              help='Seconds between pod discovery passes, 0 to discover once (default: 30)')
@click.option('--container', '-C', help='Container to tail (default: first container)')
@click.option('--tail', 'tail_lines', type=click.IntRange(min=0), help='Lines of history per pod')
@click.option('--since', 'since_seconds', type=click.IntRange(min=1), help='Only show history newer than SECONDS')
@click.option('--kubeconfig', type=click.Path(), help='Path to kubeconfig file')
@click.option('--context', help='Kubernetes context to use')
@click.pass_context
def tail(ctx, namespace, pods, deployments, statefulsets, daemonsets, jobs, cronjobs,
         follow, filter_text, json_format, refresh_interval, container, tail_lines,
         since_seconds, kubeconfig, context):
    """Stream logs from pods and the pods of workload resources"""
    app_config: AppConfig = ctx.obj['config']
    stream = app_config.stream

    if namespace:
        stream.namespace = namespace
    for field_name, values in (('pods', pods), ('deployments', deployments),
                               ('statefulsets', statefulsets), ('daemonsets', daemonsets),
                               ('jobs', jobs), ('cronjobs', cronjobs)):
        if values:
            setattr(stream, field_name, list(values))
    stream.follow = follow or stream.follow
    stream.json_format = json_format or stream.json_format
    if filter_text is not None:
        stream.filter_text = filter_text
    if refresh_interval is not None:
        stream.refresh_interval = refresh_interval
    if container:
        stream.container = container
    if tail_lines is not None:
        stream.tail_lines = tail_lines
    if since_seconds is not None:
        stream.since_seconds = since_seconds
    if kubeconfig:
        app_config.cluster.kubeconfig_path = kubeconfig
    if context:
        app_config.cluster.context = context

    try:
        app_config.validate_for_streaming()
    except ConfigurationError as e:
        raise click.UsageError(str(e))

    app = PodTailApp(app_config)
    try:
        asyncio.run(app.run())
    except KubernetesConnectionError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except WriterError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


# Main function for direct execution
def main():
    """Main entry point"""
    try:
        cli()
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
