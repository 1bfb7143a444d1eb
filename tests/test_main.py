"""Tests for logging setup and the command line."""

import json
import logging
import os
import sys
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from dhcp_template.cli import cli
from dhcp_template.main import JsonFormatter, run_agent, run_operator, setup_logging


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            "dhcp_template.agent", logging.INFO, __file__, 1, "Pushed", (), None
        )
        record.node = "router-1"
        record.token = 42

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Pushed"
        assert data["level"] == "INFO"
        assert data["logger"] == "dhcp_template.agent"
        assert data["node"] == "router-1"
        assert data["token"] == 42
        assert "msg" not in data

    def test_includes_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "Failed", (), sys.exc_info()
            )

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in data["exception"]

    def test_setup_logging_quiets_client_libraries(self) -> None:
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        try:
            setup_logging("debug")

            assert root.level == logging.DEBUG
            assert logging.getLogger("kubernetes").level == logging.WARNING
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = handlers
            root.setLevel(level)


class TestEntryPoints:
    """Tests for process entry points failing fast on bad configuration."""

    @pytest.mark.asyncio
    async def test_agent_rejects_bad_endpoint(self) -> None:
        with patch.dict(os.environ, {"DHCP_TEMPLATE__ENDPOINT": "ftp://operator"}, clear=True):
            assert await run_agent() == 1

    @pytest.mark.asyncio
    async def test_operator_rejects_short_idle_timeout(self) -> None:
        with patch.dict(os.environ, {"DHCP_TEMPLATE__STATE_IDLE_SECONDS": "5"}, clear=True):
            assert await run_operator() == 1


class TestCli:
    """Tests for the click command group."""

    def test_lists_commands(self) -> None:
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ["agent", "agent-service", "operator"]:
            assert command in result.output

    def test_version(self) -> None:
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_rejects_unknown_log_level(self) -> None:
        result = CliRunner().invoke(cli, ["agent", "--log-level", "LOUD"])

        assert result.exit_code != 0
        assert "LOUD" in result.output
