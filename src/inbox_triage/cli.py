"""Command-line interface for the inbox triage engine.

Provides commands for configuration validation, retriage, corrections,
sender-rule management and the JSON API server.

Usage:
    python -m inbox_triage validate-config
    python -m inbox_triage retriage acme --limit 50 --dry-run
    python -m inbox_triage correct conv-123 customer_inquiry
    python -m inbox_triage candidates acme --accept @newvendor.com
    python -m inbox_triage rules seed acme
    python -m inbox_triage serve
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from inbox_triage.config import validate_config_file
from inbox_triage.core.logging import configure_logging

if TYPE_CHECKING:
    from inbox_triage.classifier.claude_classifier import MessageClassifier
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    classifier: MessageClassifier | None


async def _init_cli_deps(with_classifier: bool = True) -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, opens the database and (when ANTHROPIC_API_KEY is set)
    builds the classifier. Prints actionable error messages and calls
    sys.exit(1) on failure.
    """
    from inbox_triage.classifier.claude_classifier import create_classifier
    from inbox_triage.config import get_config
    from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError
    from inbox_triage.db.store import DatabaseStore

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and edit it,\n"
            "or point INBOX_TRIAGE_CONFIG_PATH at your config file."
        )
        sys.exit(1)

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    # 3. Initialize classifier
    classifier = create_classifier(config, store) if with_classifier else None

    return CLIDeps(config=config, store=store, classifier=classifier)


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run an async command with the CLI's interrupt and error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Inbox Triage - rules-first triage of inbound customer messages."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database schema (safe to run repeatedly)."""
    _run(_run_init_db())


async def _run_init_db() -> None:
    from inbox_triage.db.models import verify_schema

    deps = await _init_cli_deps(with_classifier=False)
    if not await verify_schema(deps.store.db_path):
        console.print(f"[red]✗[/red] Schema incomplete in {deps.store.db_path}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Database ready at [cyan]{deps.store.db_path}[/cyan]")


# ---------------------------------------------------------------------------
# Retriage
# ---------------------------------------------------------------------------


@cli.command("retriage")
@click.argument("tenant_id")
@click.option("--limit", default=None, type=int, help="Conversations per page (config default)")
@click.option("--offset", default=0, type=int, help="Newest conversations to skip")
@click.option("--dry-run", "is_dry_run", is_flag=True, help="Report changes without writing")
@click.option(
    "--skip-ai", is_flag=True, help="Sender rules and built-in patterns only, no classifier calls"
)
@click.option(
    "--confidence-threshold",
    default=None,
    type=click.FloatRange(0.0, 1.0),
    help="Replace the high confidence threshold for this run",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def retriage(
    tenant_id: str,
    limit: int | None,
    offset: int,
    is_dry_run: bool,
    skip_ai: bool,
    confidence_threshold: float | None,
    as_json: bool,
) -> None:
    """Re-run triage over one page of a tenant's conversations, newest first."""
    _run(
        _run_retriage(tenant_id, limit, offset, is_dry_run, skip_ai, confidence_threshold, as_json)
    )


async def _run_retriage(
    tenant_id: str,
    limit: int | None,
    offset: int,
    is_dry_run: bool,
    skip_ai: bool,
    confidence_threshold: float | None,
    as_json: bool,
) -> None:
    from inbox_triage.engine.batch_retriage import BatchRetriageProcessor, print_retriage_report

    deps = await _init_cli_deps(with_classifier=not skip_ai)
    if deps.classifier is None and not skip_ai and not as_json:
        console.print(
            "[yellow]Warning:[/yellow] ANTHROPIC_API_KEY is not set; running with sender rules only."
        )

    processor = BatchRetriageProcessor(deps.store, deps.config, classifier=deps.classifier)
    summary = await processor.run(
        tenant_id,
        limit=limit,
        offset=offset,
        dry_run=is_dry_run,
        skip_ai=skip_ai,
        confidence_threshold=confidence_threshold,
    )

    if as_json:
        data = summary.to_dict()
        _print_json(
            {"processed": data["processed"], "changed": data["changed"], "results": data["results"]}
        )
    else:
        print_retriage_report(summary, console)


@cli.command("retriage-one")
@click.argument("conversation_id")
@click.option("--dry-run", "is_dry_run", is_flag=True, help="Report the change without writing")
@click.option("--skip-ai", is_flag=True, help="Sender rules and patterns only, no classifier call")
def retriage_one(conversation_id: str, is_dry_run: bool, skip_ai: bool) -> None:
    """Re-run triage for a single conversation."""
    _run(_run_retriage_one(conversation_id, is_dry_run, skip_ai))


async def _run_retriage_one(conversation_id: str, is_dry_run: bool, skip_ai: bool) -> None:
    from inbox_triage.core.errors import ConversationNotFound
    from inbox_triage.engine.pipeline import TriagePipeline

    deps = await _init_cli_deps(with_classifier=not skip_ai)
    pipeline = TriagePipeline(deps.store, deps.config, classifier=deps.classifier)
    try:
        result = await pipeline.retriage_conversation(
            conversation_id, skip_ai=skip_ai, dry_run=is_dry_run
        )
    except ConversationNotFound as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)

    _print_json({"changed": result.changed, "original": result.original, "updated": result.updated})
    if result.skipped_reason:
        console.print(f"[dim]Skipped: {result.skipped_reason}[/dim]")
    if result.error:
        console.print(f"[red]Write failed:[/red] {result.error}")
        sys.exit(1)


# ---------------------------------------------------------------------------
# Corrections and rule learning
# ---------------------------------------------------------------------------


@cli.command("correct")
@click.argument("conversation_id")
@click.argument("classification")
@click.option("--by", "corrected_by", default="operator", help="Who made the correction")
def correct(conversation_id: str, classification: str, corrected_by: str) -> None:
    """Record a human classification for a conversation."""
    _run(_run_correct(conversation_id, classification, corrected_by))


async def _run_correct(conversation_id: str, classification: str, corrected_by: str) -> None:
    from inbox_triage.core.errors import ConversationNotFound
    from inbox_triage.learning.corrections import CorrectionLedger
    from inbox_triage.learning.rule_learner import RuleLearner

    deps = await _init_cli_deps(with_classifier=False)
    ledger = CorrectionLedger(deps.store, deps.config, RuleLearner(deps.store, deps.config))
    try:
        result = await ledger.record_correction(
            conversation_id, classification, corrected_by=corrected_by
        )
    except (ValueError, ConversationNotFound) as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)

    if not result.changed:
        console.print(f"Already classified as [cyan]{result.new_classification}[/cyan]")
        return
    console.print(
        f"[green]✓[/green] {conversation_id}: "
        f"{result.original_classification or 'untriaged'} → {result.new_classification}"
    )
    for pattern in result.rules_created:
        console.print(f"  [green]+[/green] Rule created for [cyan]{pattern}[/cyan]")


def _print_candidates(title: str, candidates: list) -> None:
    if not candidates:
        console.print(f"[dim]No {title.lower()}.[/dim]")
        return
    table = Table(title=title)
    table.add_column("Pattern", style="cyan")
    table.add_column("Classification")
    table.add_column("Reply", justify="center")
    table.add_column("Evidence", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Reason", style="dim")
    for c in candidates:
        table.add_row(
            c.pattern,
            c.classification.value,
            "yes" if c.requires_reply else "no",
            str(c.evidence),
            f"{c.confidence:.2f}",
            c.reason,
        )
    console.print(table)


@cli.command("candidates")
@click.argument("tenant_id")
@click.option("--accept", "accept_pattern", default=None, help="Create the rule for this pattern")
def candidates(tenant_id: str, accept_pattern: str | None) -> None:
    """List sender-rule candidates from corrections, or accept one."""
    _run(_run_candidates(tenant_id, accept_pattern))


async def _run_candidates(tenant_id: str, accept_pattern: str | None) -> None:
    from inbox_triage.core.errors import RuleCandidateNotFound
    from inbox_triage.learning.rule_learner import RuleLearner

    deps = await _init_cli_deps(with_classifier=False)
    learner = RuleLearner(deps.store, deps.config)

    if accept_pattern:
        try:
            rule_id = await learner.accept_pattern(tenant_id, accept_pattern)
        except RuleCandidateNotFound as e:
            console.print(f"[red]✗[/red] {e}")
            sys.exit(1)
        if rule_id is None:
            console.print(f"Rule for [cyan]{accept_pattern}[/cyan] already exists")
        else:
            console.print(f"[green]✓[/green] Created rule {rule_id} for [cyan]{accept_pattern}[/cyan]")
        return

    _print_candidates("Correction candidates", await learner.find_candidates(tenant_id))


@cli.command("compute-stats")
@click.argument("tenant_id")
def compute_stats(tenant_id: str) -> None:
    """Recompute sender behavior stats from message history."""
    _run(_run_compute_stats(tenant_id))


async def _run_compute_stats(tenant_id: str) -> None:
    from inbox_triage.learning.behavior_stats import BehaviorStatsAggregator

    deps = await _init_cli_deps(with_classifier=False)
    stats = await BehaviorStatsAggregator(deps.store).compute(tenant_id)
    if not stats:
        console.print("[dim]Not enough message history for any sender domain.[/dim]")
        return

    table = Table(title=f"Sender behavior: {tenant_id}")
    table.add_column("Domain", style="cyan")
    table.add_column("Messages", justify="right")
    table.add_column("Reply rate", justify="right")
    table.add_column("Avg response", justify="right")
    table.add_column("VIP", justify="right")
    table.add_column("Suggested bucket")
    for stat in sorted(stats, key=lambda s: s.vip_score, reverse=True):
        avg = stat.avg_response_time_minutes
        table.add_row(
            stat.sender_domain,
            str(stat.total_messages),
            f"{stat.reply_rate:.0%}",
            f"{avg:.0f} min" if avg is not None else "-",
            f"{stat.vip_score:.2f}",
            stat.suggested_bucket or "-",
        )
    console.print(table)


@cli.command("suggest-rules")
@click.argument("tenant_id")
@click.option("--min-emails", default=None, type=int, help="Minimum messages per domain")
def suggest_rules(tenant_id: str, min_emails: int | None) -> None:
    """Suggest sender rules from stored behavior stats."""
    _run(_run_suggest_rules(tenant_id, min_emails))


async def _run_suggest_rules(tenant_id: str, min_emails: int | None) -> None:
    from inbox_triage.learning.rule_learner import RuleLearner

    deps = await _init_cli_deps(with_classifier=False)
    learner = RuleLearner(deps.store, deps.config)
    suggestions = await learner.suggest_from_stats(tenant_id, min_email_count=min_emails)
    _print_candidates("Rule suggestions", suggestions)
    if suggestions:
        console.print(f"\nAccept one with: inbox-triage candidates {tenant_id} --accept <pattern>")


# ---------------------------------------------------------------------------
# Sender rules
# ---------------------------------------------------------------------------


@cli.group("rules")
def rules() -> None:
    """Manage gatekeeper sender rules."""


@rules.command("list")
@click.argument("tenant_id")
@click.option("--all", "include_inactive", is_flag=True, help="Include disabled rules")
def rules_list(tenant_id: str, include_inactive: bool) -> None:
    """List a tenant's sender rules in match order."""
    _run(_run_rules_list(tenant_id, include_inactive))


async def _run_rules_list(tenant_id: str, include_inactive: bool) -> None:
    deps = await _init_cli_deps(with_classifier=False)
    rule_list = await deps.store.get_sender_rules(tenant_id, active_only=not include_inactive)
    if not rule_list:
        console.print("[dim]No sender rules.[/dim]")
        return

    table = Table(title=f"Sender rules: {tenant_id}")
    table.add_column("ID", justify="right")
    table.add_column("Pattern", style="cyan")
    table.add_column("Classification")
    table.add_column("Reply", justify="center")
    table.add_column("Keywords")
    table.add_column("Hits", justify="right")
    table.add_column("Origin", style="dim")
    table.add_column("Active", justify="center")
    for rule in rule_list:
        table.add_row(
            str(rule.id),
            rule.pattern,
            rule.default_classification,
            "yes" if rule.default_requires_reply else "no",
            ", ".join(rule.override_keywords) or "-",
            str(rule.hit_count),
            rule.created_by,
            "[green]✓[/green]" if rule.is_active else "[red]✗[/red]",
        )
    console.print(table)


@rules.command("add")
@click.argument("tenant_id")
@click.argument("pattern")
@click.argument("classification")
@click.option("--requires-reply/--no-reply", default=False, help="Default reply flag")
@click.option("--keyword", "keywords", multiple=True, help="Override keyword (repeatable)")
@click.option("--override-classification", default=None, help="Category when a keyword matches")
@click.option(
    "--override-requires-reply/--override-no-reply",
    default=None,
    help="Reply flag when a keyword matches",
)
def rules_add(
    tenant_id: str,
    pattern: str,
    classification: str,
    requires_reply: bool,
    keywords: tuple[str, ...],
    override_classification: str | None,
    override_requires_reply: bool | None,
) -> None:
    """Add a sender rule ('@domain' or an address substring)."""
    _run(
        _run_rules_add(
            tenant_id,
            pattern,
            classification,
            requires_reply,
            list(keywords),
            override_classification,
            override_requires_reply,
        )
    )


async def _run_rules_add(
    tenant_id: str,
    pattern: str,
    classification: str,
    requires_reply: bool,
    keywords: list[str],
    override_classification: str | None,
    override_requires_reply: bool | None,
) -> None:
    from inbox_triage.classifier.gatekeeper import normalize_pattern
    from inbox_triage.classifier.taxonomy import Category, parse_enum
    from inbox_triage.core.errors import DuplicateRuleCandidate
    from inbox_triage.db.store import SenderRule

    normalized = normalize_pattern(pattern)
    if normalized is None:
        console.print(f"[red]✗[/red] Invalid pattern '{pattern}'")
        sys.exit(1)
    for name in (classification, override_classification):
        if name is not None and parse_enum(Category, name) is None:
            valid = ", ".join(c.value for c in Category)
            console.print(f"[red]✗[/red] Unknown category '{name}'. Valid: {valid}")
            sys.exit(1)

    deps = await _init_cli_deps(with_classifier=False)
    rule = SenderRule(
        tenant_id=tenant_id,
        pattern=normalized,
        default_classification=classification,
        default_requires_reply=requires_reply,
        override_keywords=keywords,
        override_classification=override_classification,
        override_requires_reply=override_requires_reply,
        created_by="admin",
    )
    try:
        rule_id = await deps.store.create_sender_rule(rule)
    except DuplicateRuleCandidate:
        console.print(f"[yellow]Rule for {normalized} already exists[/yellow]")
        sys.exit(1)

    await deps.store.log_action(
        action_type="sender_rule_created",
        tenant_id=tenant_id,
        target_id=str(rule_id),
        details={"pattern": normalized, "classification": classification},
        triggered_by="admin",
    )
    console.print(f"[green]✓[/green] Rule {rule_id}: [cyan]{normalized}[/cyan] → {classification}")


@rules.command("disable")
@click.argument("rule_id", type=int)
def rules_disable(rule_id: int) -> None:
    """Disable a sender rule (it stays in the table)."""
    _run(_run_rules_disable(rule_id))


async def _run_rules_disable(rule_id: int) -> None:
    deps = await _init_cli_deps(with_classifier=False)
    if not await deps.store.set_rule_active(rule_id, False):
        console.print(f"[red]✗[/red] Rule {rule_id} not found")
        sys.exit(1)
    console.print(f"[green]✓[/green] Rule {rule_id} disabled")


@rules.command("seed")
@click.argument("tenant_id")
def rules_seed(tenant_id: str) -> None:
    """Add rules for well-known automated senders (payments, shipping, job boards)."""
    _run(_run_rules_seed(tenant_id))


async def _run_rules_seed(tenant_id: str) -> None:
    from inbox_triage.learning.rule_learner import RuleLearner

    deps = await _init_cli_deps(with_classifier=False)
    created = await RuleLearner(deps.store, deps.config).seed_known_rules(tenant_id)
    if not created:
        console.print("[dim]All known sender rules already exist.[/dim]")
        return
    console.print(f"[green]✓[/green] Seeded {len(created)} rules for [cyan]{tenant_id}[/cyan]")
    for pattern in created:
        console.print(f"  {pattern}")


@rules.command("audit")
@click.argument("tenant_id")
@click.option("--stale-days", default=30, type=int, help="Age before an unused rule is stale")
def rules_audit(tenant_id: str, stale_days: int) -> None:
    """Report overlapping, stale and malformed sender rules."""
    _run(_run_rules_audit(tenant_id, stale_days))


async def _run_rules_audit(tenant_id: str, stale_days: int) -> None:
    from inbox_triage.classifier.gatekeeper import audit_rules

    deps = await _init_cli_deps(with_classifier=False)
    rule_list = await deps.store.get_sender_rules(tenant_id, active_only=False)
    report = audit_rules(rule_list, threshold_days=stale_days)

    console.print(
        f"\n[bold]Rule audit: {tenant_id}[/bold]  "
        f"{report.active_rules} active of {report.total_rules}"
    )
    if not (report.overlaps or report.stale_rules or report.malformed_rules):
        console.print("[green]✓[/green] No issues found")
        return

    for overlap in report.overlaps:
        marker = "[red]conflict[/red]" if overlap.conflicting else "[yellow]overlap[/yellow]"
        console.print(
            f"  {marker}: {overlap.earlier_pattern} ({overlap.earlier_classification}) "
            f"shadows {overlap.later_pattern} ({overlap.later_classification})"
        )
    for pattern in report.stale_rules:
        console.print(f"  [yellow]stale[/yellow]: {pattern} has never matched")
    for pattern in report.malformed_rules:
        console.print(f"  [red]malformed[/red]: {pattern}")


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the JSON API server with the nightly scheduler."""
    import uvicorn

    from inbox_triage.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This API has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
