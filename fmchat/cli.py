"""
fmchat CLI: terminal front end for the on-device chat core.

Registered as the `fmchat` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
from pathlib import Path

import click

from .availability import AvailabilityMonitor
from .config import ChatSettings
from .controller import ConversationController
from .exceptions import AppleFMSetupError
from .models import Conversation
from .protocols import AppleFMBackend
from .reconciler import SendOutcome
from .store import ConversationStore

HELP_TEXT = """Slash Commands
/help                          Show command help
/new                           Start a new conversation
/list                          List conversations
/switch N                      Switch to conversation N from /list
/delete                        Delete the current conversation
/rename TITLE                  Rename the current conversation
/retry                         Re-check model availability
/export [jsonl|md] [path]      Export the current conversation
/quit                          Leave the chat
"""


def slugify_filename(value: str) -> str:
    """Convert title to a filesystem-safe stem."""
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", value.strip().lower()).strip("-")
    return slug or "chat-export"


def _print_conversation_table(conversations: list[Conversation], current_id: str | None) -> None:
    if not conversations:
        click.secho("No conversations yet.", fg="yellow")
        return
    click.secho(f"  {'#':<4}{'Title':<36}{'Messages':<10}{'Updated'}", fg="cyan")
    click.secho(f"  {'─' * 3} {'─' * 35} {'─' * 9} {'─' * 25}", fg="cyan")
    for index, conversation in enumerate(conversations, 1):
        marker = "*" if conversation.id == current_id else " "
        click.echo(
            f"{marker} {index:<4}{conversation.title[:35]:<36}{len(conversation.messages):<10}"
            f"{conversation.updated_at.replace(microsecond=0).isoformat()}"
        )


def _resolve_conversation(conversations: list[Conversation], ref: str) -> Conversation | None:
    """Find a conversation by 1-based list index, full id, or unique id prefix."""
    if ref.isdigit():
        index = int(ref) - 1
        return conversations[index] if 0 <= index < len(conversations) else None
    matches = [c for c in conversations if c.id == ref or c.id.startswith(ref)]
    return matches[0] if len(matches) == 1 else None


def _export(
    store: ConversationStore, conversation: Conversation, fmt: str, target: Path | None
) -> Path:
    if target is None:
        suffix = ".md" if fmt == "md" else ".jsonl"
        target = Path.cwd() / f"{slugify_filename(conversation.title)}{suffix}"
    if fmt == "md" or target.suffix.lower() == ".md":
        target = target.with_suffix(".md")
        store.export_markdown(conversation, target)
    else:
        target = target.with_suffix(".jsonl")
        store.export_jsonl(conversation, target)
    return target


class StreamPrinter:
    """Controller listener that echoes streamed text as it grows."""

    def __init__(self) -> None:
        self.printed = ""

    def reset(self) -> None:
        self.printed = ""

    def __call__(self, controller: ConversationController) -> None:
        if not controller.is_generating:
            return
        conversation = controller.current_conversation
        if conversation is None or not conversation.messages:
            return
        last = conversation.messages[-1]
        if last.is_from_user:
            return
        text = last.content
        if text.startswith(self.printed):
            click.echo(text[len(self.printed) :], nl=False)
        else:
            click.echo("\n" + text, nl=False)
        self.printed = text


async def _run_slash_command(controller: ConversationController, raw_text: str) -> bool:
    """Execute a slash command. Returns False when the REPL should exit."""
    try:
        tokens = shlex.split(raw_text)
    except ValueError as exc:
        click.secho(f"Command parse error: {exc}", fg="red")
        return True

    command = tokens[0].lower()
    args = tokens[1:]

    if command in {"/quit", "/exit"}:
        return False

    if command == "/help":
        click.echo(HELP_TEXT)
    elif command == "/new":
        controller.create_conversation()
        click.secho("New conversation ready. Title auto-generates from first message.", fg="green")
    elif command == "/list":
        _print_conversation_table(controller.conversations, controller.current_id)
    elif command == "/switch":
        target = _resolve_conversation(controller.conversations, args[0]) if args else None
        if target is None:
            click.secho("Usage: /switch N (see /list).", fg="yellow")
        else:
            controller.select_conversation(target.id)
            click.secho(f"Switched to: {target.title}", fg="green")
    elif command == "/delete":
        current = controller.current_conversation
        if current is None:
            click.secho("No conversation selected to delete.", fg="yellow")
        elif click.confirm(f"Delete '{current.title}' permanently?", default=False):
            controller.delete_conversation(current.id)
            click.secho("Conversation deleted.", fg="green")
    elif command == "/rename":
        current = controller.current_conversation
        if current is None or not args:
            click.secho("Usage: /rename TITLE (with a conversation selected).", fg="yellow")
        else:
            controller.rename_conversation(current.id, " ".join(args))
    elif command == "/retry":
        state = controller.check_availability()
        if state.available:
            click.secho("Model available.", fg="green")
        else:
            click.secho(f"{state.reason.title}: {state.message}", fg="yellow")
    elif command == "/export":
        current = controller.current_conversation
        if current is None:
            click.secho("No active conversation to export.", fg="yellow")
            return True
        fmt = "jsonl"
        destination: Path | None = None
        if args:
            if args[0].lower() in {"jsonl", "md"}:
                fmt = args[0].lower()
                if len(args) > 1:
                    destination = Path(args[1]).expanduser()
            else:
                destination = Path(args[0]).expanduser()
        path = _export(controller.store, current, fmt, destination)
        click.secho(f"Exported conversation to {path}", fg="green")
    else:
        click.secho(f"Unknown command: {command}. Try /help.", fg="yellow")
    return True


async def _chat_loop(controller: ConversationController) -> None:
    printer = StreamPrinter()
    controller.add_listener(printer)

    state = controller.availability
    if state is not None and not state.available:
        click.secho(f"{state.reason.title}: {state.message}", fg="yellow")
        click.echo("You can still browse and export saved conversations. /retry re-checks.")
    current = controller.current_conversation
    if current is not None:
        click.secho(f"Resumed: {current.title}", fg="cyan")
    click.echo("Type a message, or /help for commands.")

    while True:
        try:
            raw = await asyncio.to_thread(
                click.prompt, "you", default="", show_default=False, prompt_suffix="> "
            )
        except click.Abort:
            click.echo()
            break

        text = raw.strip()
        if not text:
            continue
        if text.startswith("/"):
            if not await _run_slash_command(controller, text):
                break
            continue

        printer.reset()
        click.secho("assistant> ", fg="cyan", nl=False)
        outcome = await controller.send(text)
        click.echo()
        if outcome is SendOutcome.FAILED:
            click.secho(controller.error_message or "Generation failed.", fg="red")
        elif outcome is SendOutcome.UNAVAILABLE:
            click.secho(controller.error_message or "Model unavailable.", fg="yellow")
        elif outcome is SendOutcome.BUSY:
            click.secho("A reply is still streaming.", fg="yellow")


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="fmchat")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding chat history (default: $FMCHAT_DATA_DIR or ~/.fmchat).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path | None, verbose: bool) -> None:
    """fmchat: chat with the on-device Apple Foundation Model."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    settings = ChatSettings.from_env()
    if data_dir is not None:
        settings.data_dir = data_dir.expanduser()
    ctx.obj = settings


@cli.command()
@click.option("--instructions", default=None, help="Override the system instructions.")
@click.option(
    "--first-chunk-timeout",
    type=float,
    default=None,
    help="Seconds to wait for the first streamed chunk (0 disables).",
)
@click.option(
    "--idle-timeout",
    type=float,
    default=None,
    help="Seconds to wait between streamed chunks (0 disables).",
)
@click.pass_obj
def chat(
    settings: ChatSettings,
    instructions: str | None,
    first_chunk_timeout: float | None,
    idle_timeout: float | None,
) -> None:
    """Start an interactive chat session."""
    if instructions:
        settings.instructions = instructions
    if first_chunk_timeout is not None:
        settings.first_chunk_timeout = first_chunk_timeout or None
    if idle_timeout is not None:
        settings.idle_timeout = idle_timeout or None

    controller = ConversationController.open(AppleFMBackend(), settings)
    try:
        asyncio.run(_chat_loop(controller))
    finally:
        controller.close()


@cli.command()
def status() -> None:
    """Report whether the on-device model can serve requests."""
    state = AvailabilityMonitor(AppleFMBackend()).check()
    if state.available:
        click.secho("Model available.", fg="green")
        return
    click.secho(f"{state.reason.title}", fg="yellow", bold=True)
    click.echo(state.message)
    raise SystemExit(1)


@cli.command(name="list")
@click.pass_obj
def list_cmd(settings: ChatSettings) -> None:
    """List saved conversations."""
    store = ConversationStore(settings.db_path)
    try:
        conversations = store.load()
        _print_conversation_table(conversations, conversations[0].id if conversations else None)
    finally:
        store.close()


@cli.command(name="export")
@click.argument("conversation")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["jsonl", "md"]),
    default="jsonl",
    show_default=True,
)
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_obj
def export_cmd(settings: ChatSettings, conversation: str, fmt: str, output: Path | None) -> None:
    """Export CONVERSATION (list number or id prefix) to JSONL or Markdown."""
    store = ConversationStore(settings.db_path)
    try:
        target = _resolve_conversation(store.load(), conversation)
        if target is None:
            click.secho(f"Error: no conversation matches '{conversation}'.", fg="red", err=True)
            raise SystemExit(1)
        path = _export(store, target, fmt, output)
    finally:
        store.close()
    click.secho(f"Exported conversation to {path}", fg="green")


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except AppleFMSetupError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
