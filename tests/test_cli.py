"""Tests for the reconciliation command-line interface."""

import json
import pytest
from unittest.mock import AsyncMock, patch

from fee_settlement.reconciliation import cli


@pytest.fixture
def cli_env(monkeypatch, tmp_path, db_engine):
    """Point the CLI at the test database file."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'fees.db'}")
    monkeypatch.setenv("RECEIPTS_DIR", str(tmp_path / "receipts"))
    monkeypatch.delenv("RESEND_API_KEY", raising=False)


class TestParser:

    def test_verify_defaults(self):
        args = cli.create_parser().parse_args(["verify", "order_1"])
        assert args.command == "verify"
        assert args.order_id == "order_1"
        assert args.attempts == 3
        assert args.delay == 3.0
        assert args.provider is None

    def test_sweep_options(self):
        args = cli.create_parser().parse_args(["-p", "stripe", "sweep", "-m", "30", "-l", "20"])
        assert args.command == "sweep"
        assert args.provider == "stripe"
        assert args.older_than_minutes == 30
        assert args.limit == 20


class TestMain:

    def test_no_command(self, capsys):
        assert cli.main([]) == 1

    def test_rejects_zero_attempts(self):
        with patch.object(cli, "run_verify_async", new=AsyncMock(return_value=0)) as run:
            assert cli.main(["verify", "order_1", "--attempts", "0"]) == 1
        run.assert_not_called()

    def test_verify_dispatch(self):
        with patch.object(cli, "run_verify_async", new=AsyncMock(return_value=2)) as run:
            assert cli.main(["-p", "simulator", "verify", "order_1", "-n", "5", "-d", "0.5"]) == 2
        run.assert_awaited_once_with(
            order_id="order_1", attempts=5, delay=0.5, provider="simulator"
        )

    def test_sweep_dispatch(self):
        with patch.object(cli, "run_sweep_async", new=AsyncMock(return_value=0)) as run:
            assert cli.main(["sweep", "--older-than-minutes", "60"]) == 0
        run.assert_awaited_once_with(older_than_minutes=60, limit=100, provider=None)


class TestRunCommands:

    async def test_verify_settles_order(self, cli_env, store, ledger, gateway, fee, student, capsys):
        await store.create("order_cli", student.id, fee.id, 20000)
        gateway.record_attempt("order_cli", "SUCCESS", payment_method={"upi": {}})

        with patch.object(cli, "get_gateway", return_value=gateway):
            code = await cli.run_verify_async("order_cli", attempts=1, delay=0, provider="simulator")

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "success"
        assert output["transaction"]["paymentMethod"] == "UPI"
        assert (await ledger.get_fee(fee.id)).paid_amount == 20000

    async def test_verify_pending_order(self, cli_env, store, gateway, fee, student):
        await store.create("order_wait", student.id, fee.id, 20000)

        with patch.object(cli, "get_gateway", return_value=gateway):
            code = await cli.run_verify_async("order_wait", attempts=2, delay=0, provider="simulator")

        assert code == 2

    async def test_verify_unknown_order(self, cli_env, gateway):
        with patch.object(cli, "get_gateway", return_value=gateway):
            code = await cli.run_verify_async("missing", attempts=1, delay=0, provider="simulator")
        assert code == 3

    async def test_sweep_reports_counts(self, cli_env, store, gateway, fee, student, capsys):
        await store.create("order_a", student.id, fee.id, 10000)
        await store.create("order_b", student.id, fee.id, 10000)
        gateway.record_attempt("order_a", "SUCCESS")

        with patch.object(cli, "get_gateway", return_value=gateway):
            code = await cli.run_sweep_async(older_than_minutes=0, provider="simulator")

        assert code == 0
        counts = json.loads(capsys.readouterr().out)
        assert counts["success"] == 1
        assert counts["pending"] == 1
