"""Click CLI: run a mediation session from the terminal, one action per command.

Participants are identified by their join token. Every event the
orchestrator would push is printed by a console notifier.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from config.config_loader import AppConfig, load_config
from intermediator.attachments import AttachmentError, AttachmentRegistry
from intermediator.healthcheck import run_health_checks
from intermediator.inputs import guess_mime_type, load_answers, load_context, load_response, load_verifications
from intermediator.notifications import NotificationChannel
from intermediator.orchestrator import SessionOrchestrator, ValidationError
from intermediator.output import (
    ConsoleNotifier,
    print_judgment,
    print_sessions,
    print_view,
    save_judgment_report,
)
from intermediator.providers.anthropic import AnthropicProvider
from intermediator.providers.base import GenerationError, TextGenerator, UnavailableGenerator
from intermediator.providers.gemini import GeminiProvider
from intermediator.providers.openai_provider import OpenAIProvider
from intermediator.store import SessionNotFoundError, SessionStore, StorageError

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[TextGenerator]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
}


@dataclass
class CliState:
    config: AppConfig
    provider: str
    data_dir: Path


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _usable(config: AppConfig, name: str) -> bool:
    model_cfg = config.models.get(name)
    if model_cfg is None:
        return False
    return name in config.available_providers or bool(model_cfg.base_url)


def _build_generator(config: AppConfig, name: str) -> TextGenerator:
    """Instantiate the chosen provider, or an unavailable stand-in when it has no key."""
    if not _usable(config, name):
        logger.warning("Provider '%s' is not available; generation calls will fall back", name)
        return UnavailableGenerator()
    model_cfg = config.models[name]
    if model_cfg.sdk not in PROVIDER_CLASSES:
        logger.warning("Provider '%s' uses unknown sdk '%s'", name, model_cfg.sdk)
        return UnavailableGenerator()
    try:
        return PROVIDER_CLASSES[model_cfg.sdk](model_cfg)
    except GenerationError as exc:
        logger.warning("Failed to instantiate provider '%s': %s", name, exc)
        return UnavailableGenerator()


def _build_all_generators(config: AppConfig) -> dict[str, TextGenerator]:
    """All providers that have a key (or a local base_url). Returns dict keyed by name."""
    generators: dict[str, TextGenerator] = {}
    for name in sorted(config.models):
        if not _usable(config, name):
            continue
        generator = _build_generator(config, name)
        if not isinstance(generator, UnavailableGenerator):
            generators[name] = generator
    return generators


def _orchestrator(state: CliState) -> SessionOrchestrator:
    config = state.config
    return SessionOrchestrator(
        store=SessionStore(state.data_dir),
        attachments=AttachmentRegistry(state.data_dir / "uploads", config.attachments),
        generator=_build_generator(config, state.provider),
        config=config,
        channel=NotificationChannel(ConsoleNotifier()),
    )


def _watch(orchestrator: SessionOrchestrator, session_id: str) -> None:
    """This console stands in for both participants, so both count as connected."""
    for number in (1, 2):
        orchestrator.channel.membership.connect(session_id, number)


def _resolve(orchestrator: SessionOrchestrator, token: str):
    """Session and participant for a join token; both are watched from here on."""
    try:
        session, participant = orchestrator.store.find_by_token(token)
    except (SessionNotFoundError, StorageError) as exc:
        _fail(str(exc))
    _watch(orchestrator, session.id)
    return session, participant


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    sys.exit(1)


def _run(coro):
    """Run an orchestrator coroutine, turning expected failures into a one-line error."""
    try:
        return asyncio.run(coro)
    except (ValidationError, SessionNotFoundError, AttachmentError, StorageError) as exc:
        _fail(str(exc))


@click.group()
@click.option("--provider", default=None, help="Which model generates (default: from config)")
@click.option("--data-dir", "data_dir", default=None, help="Session data directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.pass_context
def main(ctx: click.Context, provider: str | None, data_dir: str | None, verbose: bool) -> None:
    """Intermediator -- two-party mediation sessions with an automated verdict.

    \b
    Examples:
      intermediator create --workflow advanced --title "Rent split"
      intermediator answers <p1-token> answers.md
      intermediator decide <p2-token> accepted
      intermediator respond <p2-token> response.md
      intermediator context <p1-token> context.md
      intermediator verify <p2-token> verification.md
      intermediator judgment <session-id> --save
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model replies with
    # non-ASCII characters don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    ctx.obj = CliState(
        config=config,
        provider=provider or config.defaults.provider,
        data_dir=Path(data_dir) if data_dir else config.defaults.data_dir,
    )


@main.command()
@click.option("--visibility", "visibility_mode", default=None, type=click.Choice(["open", "blind"]))
@click.option("--workflow", default=None, help="simple, advanced or dynamic")
@click.option("--language", default=None, type=click.Choice(["en", "pt"]))
@click.option("--title", default=None)
@click.option("--description", "initial_description", default=None)
@click.pass_obj
def create(
    state: CliState,
    visibility_mode: str | None,
    workflow: str | None,
    language: str | None,
    title: str | None,
    initial_description: str | None,
) -> None:
    """Open a new session and print both join tokens."""
    defaults = state.config.defaults
    orchestrator = _orchestrator(state)
    session = _run(orchestrator.create_session(
        visibility_mode=visibility_mode or defaults.visibility_mode,
        workflow=workflow or defaults.workflow,
        language=language or defaults.language,
        title=title,
        initial_description=initial_description,
    ))
    console.print(f"[bold cyan]Session created:[/bold cyan] {session.id}")
    for participant in session.participants:
        console.print(f"  Participant {participant.participant_number} token: {participant.token}")


@main.command()
@click.argument("token")
@click.pass_obj
def join(state: CliState, token: str) -> None:
    """Join a session with a participant token."""
    orchestrator = _orchestrator(state)

    async def _join():
        session, participant = await orchestrator.join(token)
        return orchestrator.participant_view(session.id, participant.participant_number)

    _resolve(orchestrator, token)
    print_view(_run(_join()))


@main.command()
@click.argument("token")
@click.argument("answers_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def answers(state: CliState, token: str, answers_file: str) -> None:
    """Participant 1 submits their initial answers (frontmatter fields)."""
    orchestrator = _orchestrator(state)
    session, participant = _resolve(orchestrator, token)
    _run(orchestrator.submit_initial_answers(session.id, participant.id, load_answers(Path(answers_file))))


@main.command()
@click.argument("token")
@click.argument("decision", type=click.Choice(["accepted", "rejected"]))
@click.pass_obj
def decide(state: CliState, token: str, decision: str) -> None:
    """Participant 2 accepts or rejects the mediation."""
    orchestrator = _orchestrator(state)
    session, participant = _resolve(orchestrator, token)
    _run(orchestrator.decide(session.id, participant.id, decision))


@main.command()
@click.argument("token")
@click.argument("response_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def respond(state: CliState, token: str, response_file: str) -> None:
    """Participant 2 submits their response (answer set or free-text body)."""
    orchestrator = _orchestrator(state)
    session, participant = _resolve(orchestrator, token)
    _run(orchestrator.submit_response(session.id, participant.id, load_response(Path(response_file))))


@main.command()
@click.argument("token")
@click.argument("context_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def context(state: CliState, token: str, context_file: str) -> None:
    """Either participant adds context, in turn."""
    orchestrator = _orchestrator(state)
    session, participant = _resolve(orchestrator, token)
    _run(orchestrator.submit_context(session.id, participant.id, load_context(Path(context_file))))


@main.command()
@click.argument("token")
@click.argument("verification_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def verify(state: CliState, token: str, verification_file: str) -> None:
    """Submit fact verifications (positions in your own fact list)."""
    orchestrator = _orchestrator(state)
    session, participant = _resolve(orchestrator, token)
    _run(orchestrator.submit_fact_verification(
        session.id, participant.id, load_verifications(Path(verification_file)),
    ))


@main.command("retry-judgment")
@click.argument("session_id")
@click.pass_obj
def retry_judgment(state: CliState, session_id: str) -> None:
    """Re-attempt a judgment that failed."""
    orchestrator = _orchestrator(state)
    _watch(orchestrator, session_id)
    session = _run(orchestrator.retry_judgment(session_id))
    console.print(f"Status: {session.status.value}")


@main.command()
@click.argument("token")
@click.argument("stage", type=click.Choice(["p1_initial", "p2_response", "p1_context", "p2_context"]))
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--mime-type", default=None, help="Override the guessed MIME type")
@click.pass_obj
def upload(state: CliState, token: str, stage: str, file: str, mime_type: str | None) -> None:
    """Attach evidence to a stage that is still open."""
    orchestrator = _orchestrator(state)
    session, participant = _resolve(orchestrator, token)
    path = Path(file)
    attachment = _run(orchestrator.upload_attachment(
        session.id, participant.id, stage, path.name, mime_type or guess_mime_type(path), path.read_bytes(),
    ))
    console.print(f"Attachment {attachment.id} stored ({attachment.file_type}, {attachment.file_size} bytes)")


@main.command()
@click.argument("token")
@click.pass_obj
def status(state: CliState, token: str) -> None:
    """Show a participant's view of their session."""
    orchestrator = _orchestrator(state)
    session, participant = _resolve(orchestrator, token)
    print_view(orchestrator.participant_view(session.id, participant.participant_number))


@main.command()
@click.argument("session_id")
@click.option("--save", "save_report", is_flag=True, help="Save the judgment as markdown")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.pass_obj
def judgment(state: CliState, session_id: str, save_report: bool, output_path: str | None) -> None:
    """Print the judgment and fact table of a completed session."""
    orchestrator = _orchestrator(state)
    try:
        report = orchestrator.judgment_report(session_id)
    except (ValidationError, SessionNotFoundError, StorageError) as exc:
        _fail(str(exc))
    print_judgment(report)
    if save_report:
        output_dir = Path(output_path) if output_path else state.config.defaults.output_dir
        saved = save_judgment_report(report, output_dir)
        console.print(f"\n[dim]Saved to: {saved}[/dim]")


@main.command("list")
@click.pass_obj
def list_sessions(state: CliState) -> None:
    """List stored sessions, newest first."""
    sessions = SessionStore(state.data_dir).list_sessions()
    if not sessions:
        click.echo("No sessions.")
        return
    print_sessions(sessions)


@main.command()
@click.pass_obj
def check(state: CliState) -> None:
    """Ping every configured provider that has an API key."""
    generators = _build_all_generators(state.config)
    if not generators:
        _fail("No providers available. Check API keys in .env.")

    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(generators))
    failed = False
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {escape(short_err)}")
            failed = True
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
