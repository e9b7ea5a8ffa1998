"""Rich console output and markdown file save for mediation results."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from intermediator.models import Event, Session
from intermediator.notifications import Notifier

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

VERDICT_LABELS = {
    "p1_right": "Participant 1 is right",
    "p1_more_right": "Participant 1 is more right",
    "both_right": "Both participants are right",
    "neither_right": "Neither participant is right",
    "p2_more_right": "Participant 2 is more right",
    "p2_right": "Participant 2 is right",
}

_BEHAVIOUR_SECTIONS = (
    ("p1_correct_behaviors", "Participant 1: what they did right"),
    ("p1_wrong_behaviors", "Participant 1: what they did wrong"),
    ("p2_correct_behaviors", "Participant 2: what they did right"),
    ("p2_wrong_behaviors", "Participant 2: what they did wrong"),
)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


class ConsoleNotifier(Notifier):
    """Prints each event as it would be pushed to a participant."""

    async def deliver(self, session_id: str, participant_number: int, event: Event) -> None:
        style = "red" if event.name == "error" else "cyan"
        console.print(f"[{style}]-> P{participant_number}[/{style}] [bold]{event.name}[/bold]")
        for key, value in event.payload.items():
            if key == "judgment" or value in (None, "", []):
                continue
            if isinstance(value, list):
                for item in value:
                    text = item.get("statement", item) if isinstance(item, dict) else item
                    console.print(f"    - {escape(str(text))}")
            elif isinstance(value, str) and len(value) > 80:
                console.print(Panel(Text(value), title=key, border_style="dim"))
            else:
                console.print(f"    {key}: {escape(str(value))}")


def print_sessions(sessions: list[Session]) -> None:
    table = Table(title="Sessions")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Workflow")
    table.add_column("Created")
    for session in sessions:
        table.add_row(
            session.id,
            session.title or "",
            session.status.value,
            session.workflow.value,
            datetime.fromtimestamp(session.created_at).strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def print_view(view: dict) -> None:
    """Print a participant's reconstructed view of a session."""
    console.print(Rule(f"[bold cyan]Session {view['session_id']}[/bold cyan]"))
    console.print(Text(
        f"Participant {view['participant_number']} | Status: {view['status']} | "
        f"Workflow: {view['workflow']} | Visibility: {view['visibility_mode']} | Language: {view['language']}",
        style="dim",
    ))
    if view.get("title"):
        console.print(f"[bold]{view['title']}[/bold]")

    for key, title in (
        ("summary", "Summary of Participant 1"),
        ("briefing", "Briefing"),
        ("p2_summary", "Summary of Participant 2"),
        ("p1_context_summary", "Participant 1 context"),
    ):
        if view.get(key):
            console.print(Panel(Text(view[key]), title=title, border_style="dim"))

    if view.get("dispute_points"):
        console.print("[bold]Dispute points[/bold]")
        for point in view["dispute_points"]:
            console.print(f"  - {escape(point)}")

    if view.get("facts") is not None:
        console.print("[bold]Facts to verify[/bold]")
        for position, fact in enumerate(view["facts"]):
            console.print(f"  {position}. {escape(fact['statement'])} [dim]({fact['source']})[/dim]")
        console.print(
            f"  [dim]You verified: {view['verified']} | Other side verified: {view['other_verified']}[/dim]"
        )

    if view.get("judgment"):
        console.print(f"[bold green]Verdict:[/bold green] {VERDICT_LABELS[view['judgment']['verdict']]}")


def print_judgment(report: dict) -> None:
    """Print the full judgment using Rich markdown."""
    console.print(Rule("[bold green]Judgment[/bold green]"))
    console.print(Markdown(render_report(report)))


def render_report(report: dict) -> str:
    judgment = report["judgment"]
    lines: list[str] = [
        f"## Verdict: {VERDICT_LABELS[judgment['verdict']]}",
        "",
    ]
    if not judgment.get("assessed", True):
        lines += ["*The verdict could not be assessed automatically.*", ""]

    for key, title in _BEHAVIOUR_SECTIONS:
        items = judgment.get(key) or []
        if items:
            lines.append(f"### {title}")
            lines.append("")
            lines.extend(f"- {item}" for item in items)
            lines.append("")

    lines += ["### Justification", "", judgment.get("justification", ""), ""]

    if report.get("facts"):
        lines += [
            "### Facts",
            "",
            "| # | Fact | Claimed by | P1 verification | P2 verification |",
            "|---|------|------------|-----------------|-----------------|",
        ]
        for fact in report["facts"]:
            lines.append(
                f"| {fact['id']} | {fact['statement']} | {fact['source']} | "
                f"{_verification_cell(fact['p1_verification'])} | {_verification_cell(fact['p2_verification'])} |"
            )
        lines.append("")

    return "\n".join(lines)


def _verification_cell(entry: dict | None) -> str:
    if entry is None:
        return "-"
    if entry.get("comment"):
        return f"{entry['status']}: {entry['comment']}"
    return entry["status"]


def save_judgment_report(report: dict, output_dir: Path) -> Path:
    """Save the judgment and fact table as a markdown file.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = _slug(report.get("title") or report["session_id"])
    filepath = output_dir / f"{timestamp}_{slug}.md"

    header = [
        f"# Mediation Judgment: {report.get('title') or report['session_id']}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Session:** {report['session_id']}",
        f"**Workflow:** {report['workflow']}",
        f"**Language:** {report['language']}",
        "",
        "---",
        "",
    ]
    filepath.write_text("\n".join(header) + render_report(report), encoding="utf-8")
    logger.info("Judgment saved to: %s", filepath)
    return filepath
