from __future__ import annotations

import contextlib
import mimetypes
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from functools import partial
from pathlib import Path

import anyio
import typer
from rich import box
from rich.console import Console
from rich.table import Table

from . import __version__
from .backend import BackendClient
from .config import ConfigError, ZapdeskSettings, load_settings
from .conversations import normalize_phone
from .errors import MessagingError
from .logging import get_logger, setup_logging
from .media import CapturedAudio
from .model import Message
from .render import (
    render_conversation_list,
    render_sibling_switcher,
    render_thread,
)
from .session import ChatSession, Notice

logger = get_logger(__name__)

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Multi-instance WhatsApp messaging console.",
)

_INSTANCE_OPTION = typer.Option(
    None, "--instance", "-i", help="Channel instance id to use for this contact."
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None, "--config", help="Path to zapdesk.toml."
    ),
    debug: bool = typer.Option(False, "--debug", help="Verbose console logging."),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    _ = version
    setup_logging(debug=debug)
    ctx.obj = {"config": config}


def _load_settings_or_exit(ctx: typer.Context) -> ZapdeskSettings:
    try:
        settings, _ = load_settings(ctx.obj.get("config"))
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    return settings


def _print_notice(notice: Notice) -> None:
    text = f"{notice.title}: {notice.detail}" if notice.detail else notice.title
    typer.echo(text, err=notice.level == "error")


@contextlib.asynccontextmanager
async def _open_session(settings: ZapdeskSettings, **kwargs) -> AsyncIterator[
    tuple[ChatSession, BackendClient]
]:
    backend = BackendClient(
        settings.backend_url, settings.api_key, timeout_s=settings.request_timeout_s
    )
    session = ChatSession.from_settings(
        backend, settings, on_notice=_print_notice, **kwargs
    )
    try:
        yield session, backend
    finally:
        await session.close()
        await backend.close()


def _address_or_exit(phone: str) -> str:
    address = normalize_phone(phone)
    if not address:
        typer.echo("error: enter the WhatsApp number with country code.", err=True)
        raise typer.Exit(code=1)
    return address


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _instances(settings: ZapdeskSettings) -> int:
    async with _open_session(settings) as (session, _):
        instances = await session.load_instances()
        if instances is None:
            return 1
        verdicts = await session.registry.verify_all(instances)
    table = Table(show_header=True, header_style="bold", box=box.SIMPLE)
    table.add_column("id")
    table.add_column("channel")
    table.add_column("declared")
    table.add_column("verified")
    for instance in instances:
        verdict = verdicts.get(instance.id)
        table.add_row(
            instance.id,
            instance.label,
            "connected" if instance.declared_connected else "disconnected",
            verdict.value if verdict is not None else "checking",
        )
    Console().print(table)
    return 0


@app.command()
def instances(ctx: typer.Context) -> None:
    """List channel instances and probe their connectivity."""
    settings = _load_settings_or_exit(ctx)
    raise typer.Exit(code=anyio.run(_instances, settings))


async def _conversations(
    settings: ZapdeskSettings, search: str, instance_id: str | None
) -> int:
    async with _open_session(settings) as (session, _):
        try:
            await session.refresh_conversations(instance_id=instance_id)
        except MessagingError as exc:
            typer.echo(f"{exc.title}: {exc.notice}", err=True)
            return 1
        await session.load_instances()
        lines = render_conversation_list(
            session.visible_conversations(search),
            {i.id: i for i in session.registry.instances()},
            _utc_now(),
        )
        for line in lines:
            typer.echo(line)
    return 0


@app.command()
def conversations(
    ctx: typer.Context,
    search: str = typer.Option("", "--search", "-s", help="Filter by name or number."),
    instance: str | None = typer.Option(
        None, "--instance", "-i", help="Only conversations on this channel instance."
    ),
) -> None:
    """List conversations, most recent first."""
    settings = _load_settings_or_exit(ctx)
    raise typer.Exit(code=anyio.run(_conversations, settings, search, instance))


def _echo_thread(session: ChatSession, messages: list[Message]) -> None:
    instances = {i.id: i for i in session.registry.instances()}
    active = session.active
    tabs = render_sibling_switcher(
        session.siblings, instances, active.id if active else None
    )
    if tabs:
        typer.echo("  ".join(tabs))
    for line in render_thread(messages):
        typer.echo(line)


async def _thread(settings: ZapdeskSettings, address: str, instance_id: str | None) -> int:
    async with _open_session(settings) as (session, _):
        if await session.open(address, instance_id) is None:
            return 1
        try:
            messages = await session.sync.refresh()
        except MessagingError as exc:
            typer.echo(f"{exc.title}: {exc.notice}", err=True)
            return 1
        _echo_thread(session, messages)
    return 0


@app.command()
def thread(
    ctx: typer.Context,
    phone: str = typer.Argument(..., help="Contact number."),
    instance: str | None = _INSTANCE_OPTION,
) -> None:
    """Show the message thread with a contact."""
    settings = _load_settings_or_exit(ctx)
    address = _address_or_exit(phone)
    raise typer.Exit(code=anyio.run(_thread, settings, address, instance))


async def _start(
    settings: ZapdeskSettings, address: str, instance_id: str, message: str | None
) -> int:
    async with _open_session(settings) as (session, _):
        conversation = await session.start_conversation(address, instance_id, message)
        if conversation is None:
            return 1
        typer.echo(f"conversation {conversation.id} on {conversation.instance_id}")
    return 0


@app.command()
def start(
    ctx: typer.Context,
    phone: str = typer.Argument(..., help="Contact number."),
    instance: str = typer.Option(..., "--instance", "-i", help="Channel instance id."),
    message: str | None = typer.Option(None, "--message", "-m", help="First message."),
) -> None:
    """Start (or resume) a conversation on a channel instance."""
    settings = _load_settings_or_exit(ctx)
    address = _address_or_exit(phone)
    raise typer.Exit(code=anyio.run(_start, settings, address, instance, message))


async def _send(
    settings: ZapdeskSettings, address: str, instance_id: str | None, text: str
) -> int:
    async with _open_session(settings) as (session, _):
        if await session.open(address, instance_id) is None:
            return 1
        sent = await session.send_text(text)
    return 0 if sent is not None else 1


@app.command()
def send(
    ctx: typer.Context,
    phone: str = typer.Argument(..., help="Contact number."),
    text: str = typer.Argument(..., help="Message text."),
    instance: str | None = _INSTANCE_OPTION,
) -> None:
    """Send a text message on the contact's active conversation."""
    settings = _load_settings_or_exit(ctx)
    address = _address_or_exit(phone)
    raise typer.Exit(code=anyio.run(_send, settings, address, instance, text))


async def _send_file(
    settings: ZapdeskSettings,
    address: str,
    instance_id: str | None,
    path: Path,
    mime_type: str,
    caption: str | None,
) -> int:
    payload = await anyio.Path(path).read_bytes()
    async with _open_session(settings) as (session, _):
        if await session.open(address, instance_id) is None:
            return 1
        if mime_type.startswith("image/"):
            sent = await session.send_image(payload, mime_type, caption)
        elif mime_type.startswith("audio/"):
            sent = await session.send_audio(CapturedAudio(data=payload, mime_type=mime_type))
        else:
            sent = await session.send_document(payload, mime_type, path.name, caption)
    return 0 if sent is not None else 1


@app.command("send-file")
def send_file(
    ctx: typer.Context,
    phone: str = typer.Argument(..., help="Contact number."),
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    caption: str | None = typer.Option(None, "--caption", "-c"),
    mime_type: str | None = typer.Option(None, "--mime-type"),
    instance: str | None = _INSTANCE_OPTION,
) -> None:
    """Upload an image, audio clip or document and send it."""
    settings = _load_settings_or_exit(ctx)
    address = _address_or_exit(phone)
    resolved = mime_type or mimetypes.guess_type(path.name)[0]
    if resolved is None:
        typer.echo("error: could not guess the file type; pass --mime-type.", err=True)
        raise typer.Exit(code=1)
    raise typer.Exit(
        code=anyio.run(
            partial(_send_file, settings, address, instance, path, resolved, caption)
        )
    )


async def _watch(settings: ZapdeskSettings, address: str, instance_id: str | None) -> int:
    last: list[str] = []

    def on_messages(messages: list[Message]) -> None:
        nonlocal last
        lines = render_thread(messages)
        for line in lines[len(last) :] if lines[: len(last)] == last else lines:
            typer.echo(line)
        last = lines

    async with _open_session(settings, on_messages=on_messages) as (session, backend):
        if await session.open(address, instance_id) is None:
            return 1
        await session.run(backend.change_feed("messages", settings.organization_id))
    return 0


@app.command()
def watch(
    ctx: typer.Context,
    phone: str = typer.Argument(..., help="Contact number."),
    instance: str | None = _INSTANCE_OPTION,
) -> None:
    """Follow a thread live (polling plus change notifications)."""
    settings = _load_settings_or_exit(ctx)
    address = _address_or_exit(phone)
    try:
        code = anyio.run(_watch, settings, address, instance)
    except KeyboardInterrupt:
        logger.info("cli.watch_stopped", phone=address)
        code = 0
    raise typer.Exit(code=code)
