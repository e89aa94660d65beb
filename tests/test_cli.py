"""
Tests for the click command line interface
"""

from pathlib import Path

import pytest
from click.testing import CliRunner

from podtail import main as main_module
from podtail.exceptions import KubernetesConnectionError, WriterError
from podtail.main import cli
from podtail.models import Selector, SelectorKind


@pytest.fixture
def captured(monkeypatch):
    """Replace the session runner and record the config it was given"""
    seen = {}

    async def fake_run(self):
        seen['config'] = self.config

    monkeypatch.setattr(main_module.PodTailApp, "run", fake_run)
    return seen


def test_init_config_writes_file(tmp_path):
    output = tmp_path / "conf" / "podtail.yaml"
    result = CliRunner().invoke(cli, ["init-config", "-o", str(output)])

    assert result.exit_code == 0
    assert output.exists()
    assert "namespace: default" in output.read_text()


def test_tail_requires_a_selector(captured):
    result = CliRunner().invoke(cli, ["tail", "-n", "ns1"])

    assert result.exit_code == 2
    assert "At least one" in result.output
    assert 'config' not in captured


def test_tail_requires_a_namespace(captured):
    result = CliRunner().invoke(cli, ["tail", "-p", "p1"])

    assert result.exit_code == 2
    assert "namespace" in result.output


def test_tail_options_override_config(tmp_path, captured):
    config_file = tmp_path / "podtail.yaml"
    config_file.write_text(
        "stream:\n"
        "  namespace: from-file\n"
        "  deployments: [web]\n"
        "  refresh_interval: 10\n"
    )

    result = CliRunner().invoke(cli, [
        "-c", str(config_file), "tail",
        "-n", "ns1", "-p", "p1", "-p", "p2", "-s", "db",
        "-f", "--filter", "ERROR", "--json", "-r", "0", "--tail", "50",
    ])

    assert result.exit_code == 0, result.output
    config = captured['config']
    stream = config.stream
    assert stream.namespace == "ns1"
    assert stream.follow is True
    assert stream.filter_text == "ERROR"
    assert stream.json_format is True
    assert stream.refresh_interval == 0
    assert stream.tail_lines == 50
    assert config.validate_for_streaming() == [
        Selector(SelectorKind.POD, "ns1", "p1"),
        Selector(SelectorKind.POD, "ns1", "p2"),
        Selector(SelectorKind.DEPLOYMENT, "ns1", "web"),
        Selector(SelectorKind.STATEFULSET, "ns1", "db"),
    ]


def test_negative_refresh_interval_is_a_usage_error(captured):
    result = CliRunner().invoke(cli, ["tail", "-n", "ns1", "-p", "p1", "-r", "-5"])
    assert result.exit_code == 2


@pytest.mark.parametrize("error", [
    KubernetesConnectionError("no kubeconfig"),
    WriterError("stdout closed"),
])
def test_fatal_errors_exit_with_one(monkeypatch, error):
    async def failing_run(self):
        raise error

    monkeypatch.setattr(main_module.PodTailApp, "run", failing_run)
    result = CliRunner().invoke(cli, ["tail", "-n", "ns1", "-p", "p1"])

    assert result.exit_code == 1


def test_invalid_config_file_exits_with_one(tmp_path):
    config_file = Path(tmp_path) / "bad.yaml"
    config_file.write_text("stream: [unclosed")

    result = CliRunner().invoke(cli, ["-c", str(config_file), "tail", "-n", "ns1", "-p", "p1"])
    assert result.exit_code == 1
