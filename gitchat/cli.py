"""
gitchat.cli

CLI entrypoint.
"""
from __future__ import annotations

import argparse
import asyncio
import base64
import json
import logging
import mimetypes
import signal
from collections import Counter
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import RuntimeConfig, load_runtime_config
from .context import RepoContextRegistry
from .events import EventLogger, read_events
from .github import GatewayError, GitHubGateway
from .interfaces import ConversationStore
from .loop import TurnResult, TurnStatus
from .providers import ProviderRouter
from .schema import ImageAttachment, ToolCall, ToolResult
from .session import SessionManager
from .store import JsonConversationStore, MemoryConversationStore
from .tools import interpret_checks

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gitchat")
    parser.add_argument("--config", default="configs/gitchat.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    chat_p = sub.add_parser("chat", help="talk to the agent (one message, or an interactive session)")
    chat_p.add_argument("message", nargs="*", help="message to send; omit for an interactive session")
    chat_p.add_argument("--conversation", default=None, help="continue an existing conversation id")
    chat_p.add_argument("--model", default=None)
    chat_p.add_argument("--repo", default=None, help="override github.repo (owner/name)")
    chat_p.add_argument("--branch", default=None)
    chat_p.add_argument("--image", default=None, help="attach an image file to the first message")

    sub.add_parser("conversations", help="list saved conversations")

    hist_p = sub.add_parser("history", help="print one conversation")
    hist_p.add_argument("conversation")

    del_p = sub.add_parser("delete", help="delete a saved conversation")
    del_p.add_argument("conversation")

    status_p = sub.add_parser("status", help="show the build status of a branch")
    status_p.add_argument("--ref", default=None)

    sub.add_parser("repos", help="list repositories visible to the token")
    sub.add_parser("check", help="test the GitHub connection for the configured repo")

    up_p = sub.add_parser("upload", help="write one local file straight to the branch as its own commit")
    up_p.add_argument("source")
    up_p.add_argument("--dest", default=None, help="repository path (defaults to the file name)")
    up_p.add_argument("--message", default="")

    replay_p = sub.add_parser("replay", help="print aggregate counts from an events log")
    replay_p.add_argument("--events", default=None)

    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # litellm and httpx are chatty at INFO.
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def open_store(cfg: RuntimeConfig) -> ConversationStore:
    if cfg.storage.conversations_path:
        return JsonConversationStore(cfg.storage.conversations_path)
    return MemoryConversationStore()


def build_session_manager(cfg: RuntimeConfig, store: ConversationStore) -> SessionManager:
    def gateway_factory(repo: str, branch: str) -> GitHubGateway:
        return GitHubGateway(cfg.github.model_copy(update={"repo": repo, "branch": branch}))

    return SessionManager(
        cfg,
        contexts=RepoContextRegistry(gateway_factory),
        providers=ProviderRouter(cfg.models),
        store=store,
        events=EventLogger(cfg.storage.events_path),
        on_tool_result=_print_tool_result,
        on_text=_print_text if cfg.loop.stream else None,
    )


def _print_tool_result(call: ToolCall, result: ToolResult) -> None:
    colour = "green" if result.ok else "red"
    first_line = result.output.splitlines()[0] if result.output else ""
    console.print(f"[{colour}]{call.name}[/{colour}] {first_line[:120]}", highlight=False, markup=True)


def _print_text(chunk: str) -> None:
    console.print(chunk, end="", highlight=False, markup=False)


def _print_result(result: Optional[TurnResult], streamed: bool) -> None:
    if result is None:
        return
    if result.status is TurnStatus.DONE:
        if streamed:
            console.print()
        else:
            console.print(result.text, highlight=False, markup=False)
    elif result.status is TurnStatus.ABORTED:
        console.print("[yellow]Generation stopped.[/yellow]")
    elif result.status is TurnStatus.DEPTH_EXCEEDED:
        console.print(f"[yellow]stopped after {result.rounds} rounds without a final answer[/yellow]")
    else:
        console.print(f"[red]{result.error}[/red]", highlight=False)
    console.print(f"[dim]{result.model} | {result.rounds} round(s)[/dim]")


def _load_image(path: Optional[str]) -> Optional[ImageAttachment]:
    if not path:
        return None
    mime, _ = mimetypes.guess_type(path)
    data = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return ImageAttachment(mime_type=mime or "image/png", data=data)


async def _run_one(manager: SessionManager, conversation_id: str, text: str, image: Optional[ImageAttachment]) -> Optional[TurnResult]:
    manager.send(conversation_id, text, image=image)
    loop = asyncio.get_running_loop()
    # Ctrl-C stops the running turn instead of killing the process.
    loop.add_signal_handler(signal.SIGINT, manager.stop, conversation_id)
    try:
        return await manager.wait_idle(conversation_id)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def run_chat(cfg: RuntimeConfig, args: argparse.Namespace, store: ConversationStore) -> None:
    manager = build_session_manager(cfg, store)
    if args.conversation:
        conversation_id = args.conversation
        if store.get(conversation_id) is None:
            raise SystemExit(f"unknown conversation: {conversation_id}")
    else:
        conversation_id = manager.new_conversation(args.model).id
    session = manager.open(conversation_id, repo=args.repo, branch=args.branch)
    if args.model:
        manager.set_model(conversation_id, args.model)
    console.print(
        f"[bold]{session.context.gateway.repo}[/bold]@{session.context.gateway.branch} "
        f"conversation {conversation_id} model {session.conversation.model}"
    )
    image = _load_image(args.image)
    try:
        if args.message:
            _print_result(await _run_one(manager, conversation_id, " ".join(args.message), image), cfg.loop.stream)
            return
        while True:
            try:
                text = await asyncio.to_thread(console.input, "[bold cyan]> [/bold cyan]")
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue
            if text in ("/exit", "/quit"):
                break
            if text.startswith("/model "):
                manager.set_model(conversation_id, text.split(maxsplit=1)[1])
                console.print(f"model: {session.conversation.model}")
                continue
            _print_result(await _run_one(manager, conversation_id, text, image), cfg.loop.stream)
            image = None
    finally:
        await manager.shutdown()
        await session.context.gateway.aclose()
        if isinstance(manager.providers, ProviderRouter):
            await manager.providers.aclose()


def _list_conversations(store: ConversationStore) -> None:
    table = Table(title="conversations")
    table.add_column("id")
    table.add_column("title")
    table.add_column("model")
    table.add_column("messages", justify="right")
    table.add_column("created")
    for conv in store.list():
        table.add_row(conv.id, conv.title, conv.model, str(len(conv.messages)), conv.created_at)
    console.print(table)


def _print_history(store: ConversationStore, conversation_id: str) -> None:
    conv = store.get(conversation_id)
    if conv is None:
        raise SystemExit(f"unknown conversation: {conversation_id}")
    console.print(f"[bold]{conv.title}[/bold] ({conv.model})")
    for m in conv.messages:
        if m.role == "tool":
            console.print(f"[dim]tool {m.tool_name}:[/dim] {m.content[:200]}", highlight=False, markup=False)
        elif m.role == "agent" and m.tool_calls:
            names = ", ".join(c.name for c in m.tool_calls)
            console.print(f"[magenta]agent[/magenta] {m.content} [dim]-> {names}[/dim]", highlight=False)
        else:
            suffix = " [dim](queued)[/dim]" if m.queued else ""
            console.print(f"[cyan]{m.role}[/cyan] {m.content}{suffix}", highlight=False)


async def _with_gateway(cfg: RuntimeConfig, args: argparse.Namespace) -> None:
    gateway = GitHubGateway(cfg.github)
    try:
        if args.cmd == "status":
            ref = args.ref or gateway.branch
            runs = await gateway.get_checks(ref)
            console.print(f"{ref}: [bold]{interpret_checks(runs)}[/bold]")
            for run in runs:
                console.print(f"- {run.name}: {run.status} {run.conclusion or ''}".rstrip())
        elif args.cmd == "repos":
            for name in await gateway.list_repos():
                console.print(name)
        elif args.cmd == "check":
            info = await gateway.repo_info()
            console.print(f"[green]connected[/green] {info.get('full_name', gateway.repo)} (default branch {info.get('default_branch', '?')})")
        elif args.cmd == "upload":
            source = Path(args.source)
            dest = args.dest or source.name
            sha = await gateway.write_file_direct(dest, source.read_text(encoding="utf-8"), args.message)
            console.print(f"[green]uploaded[/green] {dest} -> {sha[:7]}")
    finally:
        await gateway.aclose()


def _replay(path: str) -> None:
    events = read_events(path)
    counts = Counter(e.get("type", "?") for e in events)
    turns = [e for e in events if e.get("type") == "span_end"]
    summary = {
        "events": len(events),
        "by_type": dict(sorted(counts.items())),
        "turns": len(turns),
        "turn_status": dict(Counter(str(t.get("payload", {}).get("outputs", {}).get("status")) for t in turns)),
    }
    console.print(json.dumps(summary, indent=2))


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.verbose)

    cfg = load_runtime_config(args.config) if Path(args.config).exists() else RuntimeConfig()
    store = open_store(cfg)

    if args.cmd == "chat":
        if not (args.repo or cfg.github.repo):
            raise SystemExit("no repository configured: set github.repo or pass --repo")
        asyncio.run(run_chat(cfg, args, store))
        return

    if args.cmd == "conversations":
        _list_conversations(store)
        return

    if args.cmd == "history":
        _print_history(store, args.conversation)
        return

    if args.cmd == "delete":
        store.delete(args.conversation)
        console.print(f"deleted {args.conversation}")
        return

    if args.cmd in ("status", "repos", "check", "upload"):
        if args.cmd != "repos" and not cfg.github.repo:
            raise SystemExit("github.repo is not configured")
        try:
            asyncio.run(_with_gateway(cfg, args))
        except GatewayError as exc:
            console.print(f"[red]{exc}[/red]", highlight=False)
            raise SystemExit(1) from exc
        return

    if args.cmd == "replay":
        path = args.events or cfg.storage.events_path
        if not path:
            raise SystemExit("no events log: pass --events or set storage.events_path")
        _replay(path)
        return

    raise SystemExit(2)


if __name__ == "__main__":
    main()
