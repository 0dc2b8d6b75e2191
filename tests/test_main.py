"""Tests for the CLI entry point."""

from __future__ import annotations

import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from factories import ADDRESS_A, alarm_description

from contract_alarms.__main__ import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_SUCCESS,
    configure_logging,
    create_parser,
    main,
    print_config_summary,
    run_create_alarm,
    run_init_db,
    run_single_pass,
    validate_config,
)
from contract_alarms.alarms.models import ReconcileReport, UnitOutcome, UnitState
from contract_alarms.chain.events import ChainError
from contract_alarms.config import Settings


@pytest.fixture(autouse=True)
def sqlite_env(monkeypatch, tmp_path):
    """Point the app at a throwaway database."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("DRY_RUN", raising=False)


class TestCreateParser:
    """Tests for argument parser creation."""

    def test_parser_config_check(self):
        """Parser should accept --config-check."""
        args = create_parser().parse_args(["--config-check"])
        assert args.config_check is True

    def test_parser_log_level(self):
        """Parser should accept --log-level."""
        args = create_parser().parse_args(["--log-level", "DEBUG"])
        assert args.log_level == "DEBUG"

    def test_parser_once_and_dry_run(self):
        """Parser should accept --once and --dry-run together."""
        args = create_parser().parse_args(["--once", "--dry-run"])
        assert args.once is True
        assert args.dry_run is True

    def test_parser_default_values(self):
        """Parser should have sensible defaults."""
        args = create_parser().parse_args([])
        assert args.config_check is False
        assert args.init_db is False
        assert args.once is False
        assert args.dry_run is False
        assert args.create_alarm is None

    def test_parser_create_alarm(self):
        """Parser should accept --create-alarm with a path."""
        args = create_parser().parse_args(["--create-alarm", "alarm.json"])
        assert args.create_alarm.name == "alarm.json"
        assert args.log_level is None


class TestConfigureLogging:
    """Tests for logging configuration."""

    def test_configure_logging_info(self):
        """Should configure INFO level logging."""
        configure_logging("INFO")
        assert logging.getLogger().level == logging.INFO

    def test_configure_logging_quiets_libraries(self):
        """Noisy client libraries are capped at WARNING."""
        configure_logging("DEBUG")
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("web3").level == logging.WARNING


class TestValidateConfig:
    """Tests for configuration validation."""

    def test_validate_config_success(self):
        """Should return settings on valid config."""
        assert validate_config() is not None

    def test_validate_config_failure(self, monkeypatch, capsys):
        """Should return None on invalid config."""
        monkeypatch.setenv("REORG_SAFETY", "-5")

        assert validate_config() is None

        captured = capsys.readouterr()
        assert "Configuration validation failed" in captured.err


class TestPrintConfigSummary:
    """Tests for the configuration summary."""

    def test_summary_redacts_credentials(self, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://alarms:hunter2@db/alarms")

        print_config_summary(Settings(), dry_run=True)

        out = capsys.readouterr().out
        assert "Contract Alarms v0.1.0" in out
        assert "hunter2" not in out
        assert "Dry Run: True" in out


class TestRunners:
    """Tests for the one-shot runners."""

    async def test_run_init_db_creates_tables(self):
        """--init-db creates the schema and exits cleanly."""
        assert await run_init_db(Settings()) == EXIT_SUCCESS

    async def test_run_single_pass_reports_failures(self):
        """A pass with failed units exits with an error code."""
        report = ReconcileReport(chain_head=10)
        report.outcomes = [UnitOutcome(1, "0xabc", 5, UnitState.DISPATCH_FAILED)]
        pipeline = MagicMock()
        pipeline.run_once = AsyncMock(return_value=report)
        pipeline.stop = AsyncMock()

        with patch("contract_alarms.__main__.Pipeline", return_value=pipeline):
            assert await run_single_pass(Settings(), dry_run=False) == EXIT_ERROR

        pipeline.stop.assert_awaited_once()

    async def test_run_single_pass_chain_error(self):
        """An unreachable RPC endpoint exits with an error code."""
        pipeline = MagicMock()
        pipeline.run_once = AsyncMock(side_effect=ChainError("unreachable"))
        pipeline.stop = AsyncMock()

        with patch("contract_alarms.__main__.Pipeline", return_value=pipeline):
            assert await run_single_pass(Settings(), dry_run=True) == EXIT_ERROR

    async def test_run_single_pass_success(self):
        pipeline = MagicMock()
        pipeline.run_once = AsyncMock(return_value=ReconcileReport(chain_head=10))
        pipeline.stop = AsyncMock()

        with patch("contract_alarms.__main__.Pipeline", return_value=pipeline):
            assert await run_single_pass(Settings(), dry_run=False) == EXIT_SUCCESS

    async def test_run_create_alarm(self, tmp_path, capsys):
        """--create-alarm stores the alarm described by the file."""
        path = tmp_path / "alarm.json"
        path.write_text(json.dumps(alarm_description()))

        assert await run_create_alarm(Settings(), path) == EXIT_SUCCESS
        assert f"Created alarm 1 on {ADDRESS_A}" in capsys.readouterr().out

    async def test_run_create_alarm_resolves_abi(self, tmp_path):
        """A description without an ABI is completed by the ABI lookup."""
        description = alarm_description()
        abi = description.pop("abi")
        path = tmp_path / "alarm.json"
        path.write_text(json.dumps(description))

        with patch(
            "contract_alarms.chain.abi.AbiResolver.fetch_abi", AsyncMock(return_value=abi)
        ) as fetch_abi:
            assert await run_create_alarm(Settings(), path) == EXIT_SUCCESS

        fetch_abi.assert_awaited_once_with(ADDRESS_A)

    async def test_run_create_alarm_unresolvable_abi(self, tmp_path, caplog):
        """No ABI for the contract exits with an error code."""
        description = alarm_description()
        del description["abi"]
        path = tmp_path / "alarm.json"
        path.write_text(json.dumps(description))

        with patch(
            "contract_alarms.chain.abi.AbiResolver.fetch_abi", AsyncMock(return_value=None)
        ):
            assert await run_create_alarm(Settings(), path) == EXIT_ERROR

        assert "no verified ABI found" in caplog.text

    async def test_run_create_alarm_unreadable_file(self, tmp_path):
        """A missing or malformed description file exits with an error code."""
        broken = tmp_path / "broken.json"
        broken.write_text("{not json")

        assert await run_create_alarm(Settings(), tmp_path / "missing.json") == EXIT_ERROR
        assert await run_create_alarm(Settings(), broken) == EXIT_ERROR


class TestMain:
    """Tests for main entry point."""

    def test_main_with_config_check(self, capsys):
        """Main should exit successfully with --config-check."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--config-check"])

        assert exc_info.value.code == EXIT_SUCCESS
        assert "Configuration is valid!" in capsys.readouterr().out

    def test_main_with_invalid_config(self, monkeypatch):
        """Main should exit with config error on invalid config."""
        monkeypatch.setenv("DATABASE_URL", "mysql://localhost/alarms")

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == EXIT_CONFIG_ERROR

    @patch("contract_alarms.__main__.run_single_pass")
    @patch("contract_alarms.__main__.asyncio.run")
    def test_main_once(self, mock_asyncio_run, mock_run_single_pass):
        """--once runs a single pass with the dry-run flag applied."""
        mock_asyncio_run.return_value = EXIT_SUCCESS

        with pytest.raises(SystemExit) as exc_info:
            main(["--once", "--dry-run"])

        assert exc_info.value.code == EXIT_SUCCESS
        mock_run_single_pass.assert_called_once()
        assert mock_run_single_pass.call_args.args[1] is True

    @patch("contract_alarms.__main__.run_pipeline")
    @patch("contract_alarms.__main__.asyncio.run")
    def test_main_runs_pipeline(self, mock_asyncio_run, _mock_run_pipeline):
        """Main should run pipeline when not in a one-shot mode."""
        mock_asyncio_run.return_value = EXIT_SUCCESS

        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == EXIT_SUCCESS
        mock_asyncio_run.assert_called_once()


class TestIntegration:
    """Integration tests for CLI invocation."""

    def test_cli_help_option(self, capsys):
        """CLI should display help with -h option."""
        with pytest.raises(SystemExit) as exc_info:
            main(["-h"])

        assert exc_info.value.code == 0
        captured = capsys.readouterr()
        assert "contract-alarms" in captured.out
        assert "--once" in captured.out
        assert "--init-db" in captured.out

    def test_cli_version_option(self, capsys):
        """CLI should display version with --version option."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])

        assert exc_info.value.code == 0
        assert "0.1.0" in capsys.readouterr().out

    def test_cli_invalid_log_level(self, capsys):
        """CLI should reject invalid log level."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--log-level", "INVALID"])

        assert exc_info.value.code != 0
        assert "invalid choice" in capsys.readouterr().err
