"""Terminal chat client with streaming output."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console

from openrouter_chat.config import AppConfig, load_config, resolve_api_key
from openrouter_chat.errors import ErrorCause, ProviderError
from openrouter_chat.llm.builder import format_file_context
from openrouter_chat.llm.provider import OpenRouterProvider
from openrouter_chat.session import ChatSession
from openrouter_chat.types import (
    ContentPart,
    FileAttachment,
    ImagePart,
    Message,
    StreamCallbacks,
    TextPart,
)

console = Console()

_HELP = "[dim]Commands: /web (toggle web search), /model <id>, /reset, /quit[/dim]"


class StreamingDisplay:
    """Renders stream callbacks to the terminal in real time."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False
        self._reasoning = False
        self.failed = False

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_chunk=self.on_chunk,
            on_complete=self.on_complete,
            on_error=self.on_error,
            on_reasoning_chunk=self.on_reasoning,
            on_retry=self.on_retry,
        )

    def on_reasoning(self, text: str) -> None:
        if not self._reasoning:
            self._reasoning = True
            self.con.print("[dim italic]thinking:[/dim italic] ", end="")
        self.con.print(text, end="", style="dim italic", markup=False, highlight=False)

    def on_chunk(self, text: str) -> None:
        if self._reasoning:
            self._reasoning = False
            self.con.print()
        if not self._streaming:
            self._streaming = True
            self.con.print()
        self.con.print(text, end="", markup=False, highlight=False)

    def on_retry(self, attempt: int) -> None:
        self._flush()
        self.con.print(f"[magenta]~ retrying (attempt {attempt}), discarding partial output[/magenta]")

    def on_complete(self) -> None:
        self._flush()

    def on_error(self, error: Exception) -> None:
        self._flush()
        self.failed = True
        self.con.print(f"[red]Error: {error}[/red]")
        if isinstance(error, ProviderError) and error.cause is ErrorCause.AUTH:
            self.con.print(
                "[yellow]Set provider.api_key in openrouter_chat.yaml or the "
                "OPENROUTER_API_KEY environment variable.[/yellow]"
            )

    def _flush(self) -> None:
        if self._streaming or self._reasoning:
            self.con.print()
        self._streaming = False
        self._reasoning = False


def _make_provider(config: AppConfig) -> OpenRouterProvider:
    return OpenRouterProvider(config)


def _read_files(paths: tuple[str, ...]) -> list[FileAttachment]:
    files = []
    for p in paths:
        path = Path(p)
        files.append(FileAttachment(name=path.name,
                                    content=path.read_text(errors="replace")))
    return files


async def _one_shot(
    session: ChatSession,
    prompt: str,
    files: list[FileAttachment],
    images: tuple[str, ...],
    stream: bool,
) -> bool:
    if stream:
        display = StreamingDisplay(console)
        reply = await session.send(prompt, images=images, files=files,
                                   callbacks=display.callbacks())
        return reply is not None

    content: str | list[ContentPart] = prompt
    if images:
        detail = session.config.chat.image_detail
        content = [TextPart(prompt), *(ImagePart(url, detail) for url in images)]
    try:
        text = await session.provider.send_message(
            [Message.user(content)],
            resolve_api_key(session.config),
            session.options(),
            persona=session.persona,
            file_context=format_file_context(files),
        )
    except ProviderError as e:
        StreamingDisplay(console).on_error(e)
        return False
    console.print(text, markup=False, highlight=False)
    return True


async def _interactive(
    session: ChatSession,
    files: list[FileAttachment],
    images: tuple[str, ...],
    verbose: bool,
) -> None:
    history_path = Path(os.path.expanduser("~/.openrouter_chat/history"))
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session: PromptSession[str] = PromptSession(history=FileHistory(str(history_path)))
    display = StreamingDisplay(console)
    console.print(_HELP)

    while True:
        try:
            user_input = (await prompt_session.prompt_async("❯ ")).strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye![/dim]")
            break
        if not user_input:
            continue

        if user_input.startswith("/"):
            cmd, _, arg = user_input.partition(" ")
            if cmd in ("/quit", "/exit"):
                console.print("[dim]Goodbye![/dim]")
                break
            if cmd == "/reset":
                session.reset()
                console.print("[dim]Conversation cleared.[/dim]")
            elif cmd == "/web":
                session.web_search = not session.web_search
                state = "on" if session.web_search else "off"
                console.print(f"[dim]Web search {state}.[/dim]")
            elif cmd == "/model" and arg.strip():
                session.model = arg.strip()
                console.print(f"[dim]Model: {session.model}[/dim]")
            else:
                console.print(_HELP)
            continue

        try:
            await session.send(user_input, images=images, files=files,
                               callbacks=display.callbacks())
            files, images = [], ()
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            if verbose:
                console.print_exception()


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to openrouter_chat.yaml (auto-detected from CWD or ~/.openrouter_chat/)")
@click.option("--model", "-m", default=None, help="Model id, e.g. x-ai/grok-4")
@click.option("--web", is_flag=True, help="Enable web search")
@click.option("--persona", default=None, help="Custom bot instructions")
@click.option("--file", "-f", "file_paths", multiple=True,
              type=click.Path(exists=True, dir_okay=False), help="Attach a text file")
@click.option("--image", "images", multiple=True, help="Attach an image URL")
@click.option("--prompt", "-p", default=None, help="Ask one question and exit")
@click.option("--no-stream", is_flag=True, help="Wait for the full answer (with --prompt)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def main(config_path: str | None, model: str | None, web: bool, persona: str | None,
         file_paths: tuple[str, ...], images: tuple[str, ...], prompt: str | None,
         no_stream: bool, verbose: bool):
    """Chat with hosted LLMs through OpenRouter."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    config, config_file = load_config(config_path)
    if config_file and verbose:
        console.print(f"[dim]Config: {config_file}[/dim]")

    provider = _make_provider(config)
    session = ChatSession(provider, config, persona=persona)
    session.model = model
    session.web_search = web

    async def _run() -> bool:
        try:
            if prompt is not None:
                return await _one_shot(session, prompt, _read_files(file_paths),
                                       images, stream=not no_stream)
            await _interactive(session, _read_files(file_paths), images, verbose)
            return True
        finally:
            await provider.close()

    ok = asyncio.run(_run())
    if not ok:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
