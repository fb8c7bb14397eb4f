"""
CLI Entrypoint for the Anonymous Evaluation Privacy Core

Provides operator commands for checking submission payloads, previewing
address generalization, and running budgeted statistics over a seed file.

Usage:
    ferpa-evaluations validate PAYLOAD_JSON [--show-issues]
    ferpa-evaluations anonymize-address ADDRESS
    ferpa-evaluations token
    ferpa-evaluations query SEED_FILE --request teacher_summary:teacher_id=t-1
    ferpa-evaluations config-show [--config PATH]
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

import typer
import yaml  # type: ignore[import-untyped]
from rich.console import Console
from rich.table import Table

from ferpa_evaluations.anonymize import (
    anonymize_address,
    generate_anonymous_token,
    round_timestamp,
    validate_submission_payload,
)
from ferpa_evaluations.config import load_config
from ferpa_evaluations.errors import ConfigError
from ferpa_evaluations.models import EvaluationRecord, StatisticResponse
from ferpa_evaluations.service import EvaluationService
from ferpa_evaluations.storage import InMemoryEvaluationStore

app = typer.Typer(
    name="ferpa-evaluations",
    help="Privacy core for anonymous course evaluations",
    add_completion=False,
)

console = Console()


def _load_seed_records(seed_file: Path) -> list[EvaluationRecord]:
    """Load evaluation rows from a YAML/JSON seed file into anonymized records."""
    data = yaml.safe_load(seed_file.read_text(encoding="utf-8")) or {}
    rows = data.get("evaluations", []) if isinstance(data, dict) else []

    now = round_timestamp(datetime.now(timezone.utc))
    records = []
    for index, row in enumerate(rows):
        records.append(
            EvaluationRecord(
                record_id=str(uuid.uuid4()),
                anonymous_token=generate_anonymous_token(f"seed-{index}"),
                course_id=str(row.get("course_id", "")),
                teacher_id=str(row.get("teacher_id", "")),
                program_id=str(row.get("program_id", "")),
                school_year=str(row.get("school_year", "")),
                ratings={str(k): float(v) for k, v in (row.get("ratings") or {}).items()},
                submitted_at=now,
            )
        )
    return records


def _parse_request(request: str) -> tuple[str, dict[str, Any], Optional[float]]:
    """Parse 'query_type:key=value,key=value[@epsilon]'."""
    epsilon: Optional[float] = None
    if "@" in request:
        request, eps_text = request.rsplit("@", 1)
        epsilon = float(eps_text)

    query_type, _, param_text = request.partition(":")
    parameters: dict[str, Any] = {}
    for pair in filter(None, param_text.split(",")):
        key, _, value = pair.partition("=")
        parameters[key.strip()] = value.strip()
    return query_type.strip(), parameters, epsilon


def _response_row(request: str, response: StatisticResponse) -> list[str]:
    if response.released and response.statistic is not None:
        return [
            request,
            "[green]released[/]" + (" (cached)" if response.cached else ""),
            str(response.statistic.count),
            f"{response.statistic.mean:.2f}",
            "",
        ]
    reason = response.reason.value if response.reason else "refused"
    return [request, f"[yellow]{reason}[/]", "-", "-", response.message]


@app.command()
def validate(
    payload_file: Path = typer.Argument(
        ...,
        help="Path to a JSON submission payload",
        exists=True,
    ),
    show_issues: bool = typer.Option(
        False,
        "--show-issues",
        help="Print matched issues (operator debugging only, never show to students)",
    ),
) -> None:
    """
    Run the submission gate on a payload file.
    """
    payload = json.loads(payload_file.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        console.print("[red]Payload must be a JSON object[/]")
        raise typer.Exit(code=2)

    result = validate_submission_payload(payload)
    if result.valid:
        console.print("[bold green]Payload passes the anonymity gate.[/]")
        return

    console.print(f"[bold red]Payload rejected:[/] {len(result.issues)} issue(s)")
    if show_issues:
        for issue in result.issues:
            console.print(f"  - {issue}")
    raise typer.Exit(code=1)


@app.command("anonymize-address")
def anonymize_address_command(
    address: str = typer.Argument(..., help="Source address to generalize"),
) -> None:
    """
    Show how an address is generalized before storage.
    """
    generalized = anonymize_address(address)
    if generalized is None:
        console.print("[yellow]dropped[/] (unrecognized format)")
        return
    console.print(generalized)


@app.command()
def token() -> None:
    """
    Print a fresh anonymous token (demonstration only).
    """
    console.print(generate_anonymous_token(str(uuid.uuid4())))


@app.command()
def query(
    seed_file: Path = typer.Argument(
        ...,
        help="YAML/JSON file with an 'evaluations' list",
        exists=True,
    ),
    request: List[str] = typer.Option(
        ...,
        "--request",
        "-q",
        help="query_type:key=value[@epsilon], e.g. teacher_summary:teacher_id=t-1@0.2",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to settings.yaml configuration file",
        exists=True,
    ),
) -> None:
    """
    Run budgeted statistics requests against seeded evaluations.

    All requests share one budget window, so repeated requests are served
    from cache and the budget runs out the way it would in production.
    """
    try:
        settings = load_config(config)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration: {e}[/]")
        raise typer.Exit(code=2) from e

    store = InMemoryEvaluationStore(_load_seed_records(seed_file))
    service = EvaluationService(config=settings, evaluations=store)
    console.print(f"[dim]Loaded {len(store)} evaluations[/]")

    table = Table(title="Statistics")
    table.add_column("Request")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    table.add_column("Mean", justify="right")
    table.add_column("Detail")

    counts = {"released": 0, "refused": 0, "invalid": 0}
    for raw in request:
        try:
            query_type, parameters, epsilon = _parse_request(raw)
            response = service.get_statistic(query_type, parameters, epsilon=epsilon)
        except ValueError as e:
            counts["invalid"] += 1
            table.add_row(raw, "[red]invalid[/]", "-", "-", str(e))
            continue
        counts[response.status] += 1
        table.add_row(*_response_row(raw, response))

    console.print(table)
    console.print(
        f"{counts['released']} released, {counts['refused']} refused, {counts['invalid']} invalid"
    )

    status = service.budget_status()
    console.print(
        f"[bold]Budget:[/] {status.remaining_epsilon:.2f}ε of {status.total_budget:.2f}ε left, "
        f"{status.queries_used}/{status.max_queries} queries used, "
        f"resets at {status.window_end.isoformat()}"
    )


@app.command("config-show")
def config_show(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to settings.yaml configuration file",
        exists=True,
    ),
) -> None:
    """
    Print the effective configuration.
    """
    try:
        settings = load_config(config)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration: {e}[/]")
        raise typer.Exit(code=2) from e

    console.print(yaml.safe_dump(settings.to_dict(), sort_keys=False))


if __name__ == "__main__":
    app()
