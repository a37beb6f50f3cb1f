from __future__ import annotations

import json

import pytest

from dcabot import cli


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, str]:
    rc = cli.main(list(argv))
    return rc, capsys.readouterr().out


def test_create_vault_run_keeper_and_show(capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(
        capsys,
        "create-pair",
        "--address",
        "pair-1",
        "--base-denom",
        "uatom",
        "--quote-denom",
        "uusd",
    )
    assert rc == 0
    assert json.loads(out)["address"] == "pair-1"

    rc, out = _run(
        capsys,
        "create-vault",
        "--owner",
        "alice",
        "--pair",
        "pair-1",
        "--amount",
        "200",
        "--denom",
        "uusd",
        "--swap-amount",
        "100",
        "--interval",
        "hourly",
    )
    assert rc == 0
    created = json.loads(out)
    assert created["vault_id"] == 1
    assert created["attributes"] == {"status": "active"}

    rc, out = _run(capsys, "--sim-price", "pair-1=2", "run-keeper", "--max-cycles", "1")
    assert rc == 0
    report = json.loads(out)
    assert report["swaps_submitted"] == 1
    assert report["replies_handled"] == 1

    rc, out = _run(capsys, "show-vault", "--vault-id", "1")
    assert rc == 0
    shown = json.loads(out)
    assert shown["vault"]["balance"] == {"denom": "uusd", "amount": 100}
    assert shown["vault"]["received_amount"]["amount"] == 50
    assert [event["event_type"] for event in shown["events"]][-1] == "execution_completed"
    assert shown["executions"][0]["outcome"] == "success"


def test_update_swap_adjustments(capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, "create-pair", "--address", "pair-1", "--base-denom", "a", "--quote-denom", "b")

    rc, out = _run(
        capsys,
        "update-swap-adjustments",
        "--pair",
        "pair-1",
        "--position-type",
        "enter",
        "--adjustment",
        "30=1.2",
        "--adjustment",
        "90=0.9",
    )

    assert rc == 0
    assert json.loads(out) == {"updated": 2}


def test_domain_errors_exit_with_code_2(capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "cancel-vault", "--vault-id", "9", "--caller", "alice")

    assert rc == 2
    assert out.startswith("error: vault 9 not found")


def test_bad_arguments_exit_via_argparse() -> None:
    with pytest.raises(SystemExit):
        cli.main(["--sim-price", "pair-1", "run-keeper"])
    with pytest.raises(SystemExit):
        cli.main(["create-vault", "--owner", "a"])


def test_run_keeper_rejects_negative_cycle_seconds(capsys: pytest.CaptureFixture[str]) -> None:
    rc, out = _run(capsys, "run-keeper", "--loop", "--cycle-seconds", "-1")

    assert rc == 2
    assert "cycle-seconds" in out


def test_create_vault_with_destinations(capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, "create-pair", "--address", "pair-1", "--base-denom", "a", "--quote-denom", "b")
    base = ["create-vault", "--owner", "alice", "--pair", "pair-1", "--amount", "100"]
    base += ["--denom", "b", "--swap-amount", "100"]

    rc, out = _run(capsys, *base, "--destination", "alice=0.25", "--destination", "bob=0.75")
    assert rc == 0
    rc, out = _run(capsys, "show-vault", "--vault-id", "1")
    assert json.loads(out)["vault"]["destinations"] == [
        {"address": "alice", "allocation": "0.25"},
        {"address": "bob", "allocation": "0.75"},
    ]

    rc, out = _run(capsys, *base, "--destination", "alice=0.5", "--destination", "bob=0.4")
    assert rc == 2
    assert out.startswith("error: destination allocations must sum to 1")
