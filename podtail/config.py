"""
Configuration management for podtail
Settings come from an optional YAML file, a .env file and environment variables
"""

from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings as Settings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import DEFAULT_PALETTE, FormattingPolicy, Selector, build_selectors


class ClusterConfig(Settings):
    """Kubernetes cluster connection configuration"""

    kubeconfig_path: Optional[str] = Field(default=None, description="Path to kubeconfig file")
    context: Optional[str] = Field(default=None, description="Kubernetes context to use")
    request_timeout: float = Field(default=10.0, gt=0, description="Timeout for non-streaming API calls in seconds")

    model_config = SettingsConfigDict(env_prefix="PODTAIL_K8S_", env_file=".env", extra="ignore")


class StreamConfig(Settings):
    """What to tail and how to present it"""

    namespace: str = Field(default="", description="Namespace all selectors are scoped to")
    pods: List[str] = Field(default_factory=list, description="Pod names to tail")
    deployments: List[str] = Field(default_factory=list, description="Deployments whose pods are tailed")
    statefulsets: List[str] = Field(default_factory=list, description="StatefulSets whose pods are tailed")
    daemonsets: List[str] = Field(default_factory=list, description="DaemonSets whose pods are tailed")
    jobs: List[str] = Field(default_factory=list, description="Jobs whose pods are tailed")
    cronjobs: List[str] = Field(default_factory=list, description="CronJobs whose pods are tailed")

    follow: bool = Field(default=False, description="Keep streams open and follow new lines")
    filter_text: str = Field(default="", description="Only emit lines containing this text")
    json_format: bool = Field(default=False, description="Pretty-print JSON log lines")
    refresh_interval: float = Field(default=30, ge=0, description="Seconds between pod discovery passes, 0 disables re-discovery")

    container: Optional[str] = Field(default=None, description="Container to tail, defaults to the first container")
    tail_lines: Optional[int] = Field(default=None, ge=0, description="Lines of history to fetch per pod")
    since_seconds: Optional[int] = Field(default=None, ge=1, description="Only fetch history newer than this many seconds")

    channel_capacity: int = Field(default=1024, ge=1, description="Lines buffered between streamers and the writer")
    shutdown_timeout: float = Field(default=5.0, ge=0, description="Seconds to wait for streams to stop on shutdown")

    model_config = SettingsConfigDict(env_prefix="PODTAIL_STREAM_", env_file=".env", extra="ignore")

    def selectors(self) -> List[Selector]:
        """Selectors for every configured resource name"""
        return build_selectors(
            self.namespace,
            pods=self.pods,
            deployments=self.deployments,
            statefulsets=self.statefulsets,
            daemonsets=self.daemonsets,
            jobs=self.jobs,
            cronjobs=self.cronjobs,
        )

    def formatting_policy(self) -> FormattingPolicy:
        return FormattingPolicy(
            filter_text=self.filter_text,
            json_format=self.json_format,
            palette=DEFAULT_PALETTE,
        )


class AppConfig(Settings):
    """Main application configuration"""

    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="WARNING", description="Logging level")

    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)

    model_config = SettingsConfigDict(env_prefix="PODTAIL_", env_file=".env", extra="ignore")

    def validate_for_streaming(self) -> List[Selector]:
        """
        Check the configuration can drive a tail session

        Returns:
            The selectors to resolve

        Raises:
            ConfigurationError: If the namespace is blank or no selector is configured
        """
        if not self.stream.namespace.strip():
            raise ConfigurationError("A namespace is required")

        selectors = self.stream.selectors()
        if not selectors:
            raise ConfigurationError(
                "At least one pod, deployment, statefulset, daemonset, job or cronjob is required"
            )
        return selectors


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from YAML file and environment variables

    Args:
        config_path: Path to YAML configuration file

    Returns:
        AppConfig instance with loaded configuration

    Raises:
        ConfigurationError: If the file cannot be parsed or holds invalid values
    """
    config_data = {}

    if config_path and Path(config_path).exists():
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping at the top level")

    try:
        return AppConfig(**config_data)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e


def save_example_config(output_path: str) -> None:
    """
    Save an example configuration file

    Args:
        output_path: Path where to save the example config
    """
    example_config = {
        'debug': False,
        'log_level': 'WARNING',
        'cluster': {
            'kubeconfig_path': '~/.kube/config',
            'context': 'my-context',
            'request_timeout': 10.0,
        },
        'stream': {
            'namespace': 'default',
            'pods': [],
            'deployments': ['web'],
            'statefulsets': [],
            'daemonsets': [],
            'jobs': [],
            'cronjobs': [],
            'follow': True,
            'filter_text': '',
            'json_format': False,
            'refresh_interval': 30,
            'channel_capacity': 1024,
            'shutdown_timeout': 5.0,
        }
    }

    with open(output_path, 'w') as f:
        yaml.dump(example_config, f, default_flow_style=False, indent=2)
