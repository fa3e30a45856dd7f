"""Tests for the command-line interface.

Runs commands through click's CliRunner against a temporary config and
database. Commands call asyncio.run themselves, so these tests are sync and
seed the database with asyncio.run as well.
"""

import asyncio
import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner
from factories import make_stored_decision, seed_conversation
from rich.console import Console

from inbox_triage.cli import cli
from inbox_triage.db.store import DatabaseStore

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "cli.db"


@pytest.fixture
def cli_config(tmp_path: Path, db_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Config file pointing at a temporary database, with no API key."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.dump(
            {
                "database": {"path": str(db_path)},
                "batch": {"requests_per_minute": 1000},
                "learning": {"repetition_threshold": 2},
                "llm_logging": {"enabled": False},
            }
        )
    )
    monkeypatch.setenv("INBOX_TRIAGE_CONFIG_PATH", str(config_path))
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return config_path


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    # Wide console so rich tables and JSON are not wrapped
    monkeypatch.setattr("inbox_triage.cli.console", Console(width=200))
    return CliRunner()


def _seeded_store(db_path: Path, **kwargs) -> None:
    async def seed() -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        store = DatabaseStore(db_path)
        await store.initialize()
        await seed_conversation(store, **kwargs)

    asyncio.run(seed())


def _json_output(output: str):
    """The JSON document printed by a --json command, ignoring any log lines."""
    lines = output.splitlines()
    start = lines.index("{")
    end = len(lines) - lines[::-1].index("}")
    return json.loads("\n".join(lines[start:end]))


def _read(db_path: Path, coro_factory):
    async def read():
        return await coro_factory(DatabaseStore(db_path))

    return asyncio.run(read())


# ---------------------------------------------------------------------------
# Tests: Setup
# ---------------------------------------------------------------------------


def test_validate_config_valid(runner: CliRunner, cli_config: Path):
    result = runner.invoke(cli, ["validate-config", "-c", str(cli_config)])
    assert result.exit_code == 0
    assert "Configuration valid" in result.output


def test_validate_config_invalid(runner: CliRunner, tmp_path: Path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("thresholds:\n  high: 0.2\n  low: 0.9\n")
    result = runner.invoke(cli, ["validate-config", "-c", str(bad)])
    assert result.exit_code == 1
    assert "Validation error" in result.output


def test_init_db(runner: CliRunner, cli_config: Path, db_path: Path):
    result = runner.invoke(cli, ["init-db"])
    assert result.exit_code == 0
    assert db_path.exists()


def test_missing_config_exits(runner: CliRunner, tmp_path: Path, monkeypatch):
    monkeypatch.setenv("INBOX_TRIAGE_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    result = runner.invoke(cli, ["init-db"])
    assert result.exit_code == 1
    assert "Config error" in result.output


# ---------------------------------------------------------------------------
# Tests: Sender rules
# ---------------------------------------------------------------------------


def test_rules_add_and_list(runner: CliRunner, cli_config: Path):
    added = runner.invoke(
        cli, ["rules", "add", "acme", "*@Stripe.com", "receipt_confirmation", "--no-reply"]
    )
    assert added.exit_code == 0
    assert "@stripe.com" in added.output

    listed = runner.invoke(cli, ["rules", "list", "acme"])
    assert listed.exit_code == 0
    assert "@stripe.com" in listed.output
    assert "receipt_confirmation" in listed.output


def test_rules_add_duplicate(runner: CliRunner, cli_config: Path):
    args = ["rules", "add", "acme", "@stripe.com", "receipt_confirmation"]
    assert runner.invoke(cli, args).exit_code == 0
    duplicate = runner.invoke(cli, args)
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.output


@pytest.mark.parametrize(
    "args",
    [
        ["rules", "add", "acme", "@", "receipt_confirmation"],
        ["rules", "add", "acme", "@stripe.com", "pizza_order"],
        [
            "rules",
            "add",
            "acme",
            "@stripe.com",
            "receipt_confirmation",
            "--keyword",
            "refund",
            "--override-classification",
            "nonsense",
        ],
    ],
)
def test_rules_add_rejects_bad_input(runner: CliRunner, cli_config: Path, args: list[str]):
    assert runner.invoke(cli, args).exit_code == 1


def test_rules_seed(runner: CliRunner, cli_config: Path):
    first = runner.invoke(cli, ["rules", "seed", "acme"])
    assert first.exit_code == 0
    assert "@stripe.com" in first.output

    again = runner.invoke(cli, ["rules", "seed", "acme"])
    assert again.exit_code == 0
    assert "already exist" in again.output

    listed = runner.invoke(cli, ["rules", "list", "acme"])
    assert "@indeed.com" in listed.output
    assert "seed" in listed.output


def test_rules_disable_unknown(runner: CliRunner, cli_config: Path):
    result = runner.invoke(cli, ["rules", "disable", "999"])
    assert result.exit_code == 1


# ---------------------------------------------------------------------------
# Tests: Retriage and corrections
# ---------------------------------------------------------------------------


def test_retriage_json_rules_only(runner: CliRunner, cli_config: Path, db_path: Path):
    _seeded_store(db_path, sender="billing@stripe.com")
    runner.invoke(cli, ["rules", "add", "acme", "@stripe.com", "receipt_confirmation"])

    result = runner.invoke(cli, ["retriage", "acme", "--json"])

    assert result.exit_code == 0
    data = _json_output(result.output)
    assert data["processed"] == 1
    assert data["changed"] == 1
    assert data["results"][0]["new"]["decision_bucket"] == "auto_handled"


def test_retriage_rejects_zero_limit(runner: CliRunner, cli_config: Path):
    result = runner.invoke(cli, ["retriage", "acme", "--limit", "0"])
    assert result.exit_code == 1
    assert "limit must be at least 1" in result.output


def test_retriage_one_not_found(runner: CliRunner, cli_config: Path):
    result = runner.invoke(cli, ["retriage-one", "missing", "--skip-ai"])
    assert result.exit_code == 1


def test_correct(runner: CliRunner, cli_config: Path, db_path: Path):
    _seeded_store(
        db_path, decision=make_stored_decision("automated_notification", "auto_handled", False)
    )

    result = runner.invoke(cli, ["correct", "conv-001", "customer_inquiry"])

    assert result.exit_code == 0
    conversation = _read(db_path, lambda s: s.get_conversation("conv-001"))
    assert conversation.decision.source == "human"


def test_correct_unknown_category(runner: CliRunner, cli_config: Path, db_path: Path):
    _seeded_store(db_path)
    result = runner.invoke(cli, ["correct", "conv-001", "pizza_order"])
    assert result.exit_code == 1
    assert "Unknown category" in result.output
