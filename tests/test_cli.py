from __future__ import annotations

import argparse

import pytest

from tourpay import cli


def test_parser_knows_maintenance_commands() -> None:
    parser = cli._build_parser()
    assert parser.parse_args(["expire-coupons"]).command == "expire-coupons"
    args = parser.parse_args(["notify-expiring-coupons", "--days", "5"])
    assert args.command == "notify-expiring-coupons"
    assert args.days == 5
    assert parser.parse_args(["notify-expiring-coupons"]).days is None


def test_expire_coupons_dispatch(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    async def fake_expire() -> int:
        return 3

    monkeypatch.setattr(cli, "expire_coupons", fake_expire)
    assert cli._run_cli_command(argparse.Namespace(command="expire-coupons")) is True
    assert "Deactivated 3 expired coupon(s)" in capsys.readouterr().out


def test_notify_dispatch_passes_days(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    seen: list[int | None] = []

    async def fake_notify(days: int | None = None) -> int:
        seen.append(days)
        return 1

    monkeypatch.setattr(cli, "notify_expiring_coupons", fake_notify)
    assert cli._run_cli_command(argparse.Namespace(command="notify-expiring-coupons", days=7)) is True
    assert seen == [7]
    assert "Sent 1 expiration notice(s)" in capsys.readouterr().out


def test_init_db_dispatch(monkeypatch: pytest.MonkeyPatch) -> None:
    called: list[bool] = []

    async def fake_init() -> None:
        called.append(True)

    monkeypatch.setattr(cli, "init_db", fake_init)
    assert cli._run_cli_command(argparse.Namespace(command="init-db")) is True
    assert called == [True]


def test_main_without_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    cli.main([])
    assert "expire-coupons" in capsys.readouterr().out
