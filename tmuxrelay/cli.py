"""Command-line interface entry point for tmux-relay."""

import argparse
import asyncio
import getpass
import logging
import sys
import threading
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tmuxrelay import __version__
from tmuxrelay.config import ConfigManager, RelayConfig
from tmuxrelay.core.paths import get_paths
from tmuxrelay.pipeline import format_capture, render_code_block, strip_chrome, strip_for_display
from tmuxrelay.relay import ConsoleSurface, DeliveryScheduler, TmuxSessionManager
from tmuxrelay.style_tokens import BLUE_LIGHT, ERROR, SUBTLE, SUCCESS, WARNING

STOP_COMMAND = "/stop"
STATUS_COMMAND = "/status"
OUTPUT_COMMAND = "/output"


def _configure_logging(verbose: bool, console: Console) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )


def main() -> None:
    """Main entry point for the tmuxrelay CLI."""
    parser = argparse.ArgumentParser(
        prog="tmuxrelay",
        description="Relay an assistant running in tmux to a chat-style surface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tmuxrelay sessions                 # List relayable tmux sessions
  tmuxrelay watch myproject          # Stream claude-myproject to this terminal
  tmuxrelay render capture.txt       # Format a saved capture once
  tmuxrelay render --raw < dump.txt  # Show a capture as an ansi code block
  tmuxrelay config show              # Show effective configuration
        """,
    )

    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=f"tmux-relay {__version__}",
    )

    parser.add_argument(
        "--working-dir",
        "-d",
        metavar="PATH",
        help="Directory whose .tmuxrelay/settings.json is applied (defaults to cwd)",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging and per-conversation JSONL debug logs",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    watch_parser = subparsers.add_parser(
        "watch",
        help="Stream a tmux session's output and forward stdin lines to it",
        description=(
            f"Lines typed on stdin are sent to the session. '{STOP_COMMAND}' interrupts "
            f"the assistant, '{STATUS_COMMAND}' shows session stats and "
            f"'{OUTPUT_COMMAND} [N]' shows the last N raw lines."
        ),
    )
    watch_parser.add_argument("session", help="Conversation id (session name without prefix)")

    render_parser = subparsers.add_parser(
        "render",
        help="Run the output pipeline once over a captured buffer",
    )
    render_parser.add_argument(
        "file", nargs="?", help="File holding a tmux capture (defaults to stdin)"
    )
    render_parser.add_argument(
        "--raw",
        action="store_true",
        help="Print the raw snapshot code block instead of the formatted turn",
    )

    subparsers.add_parser("sessions", help="List tmux sessions matching the session prefix")

    config_parser = subparsers.add_parser("config", help="Inspect configuration")
    config_subparsers = config_parser.add_subparsers(
        dest="config_command", help="Config operations"
    )
    config_subparsers.add_parser("show", help="Display the effective configuration")

    args = parser.parse_args()
    console = Console()
    _configure_logging(args.verbose, console)

    working_dir = Path(args.working_dir) if args.working_dir else Path.cwd()
    if not working_dir.exists():
        console.print(f"[{ERROR}]Error: Working directory does not exist: {working_dir}[/{ERROR}]")
        sys.exit(1)

    config_manager = ConfigManager(working_dir)
    config = config_manager.load_config()
    if args.verbose:
        config.verbose = True

    if args.command == "config":
        _handle_config_command(args, config, config_manager, console)
        return

    if args.command == "render":
        _handle_render_command(args, config, console)
        return

    if args.command == "sessions":
        _handle_sessions_command(config, console)
        return

    if args.command == "watch":
        config_manager.ensure_directories()
        try:
            asyncio.run(_watch(args.session, config, console))
        except KeyboardInterrupt:
            console.print(f"\n[{WARNING}]Interrupted.[/{WARNING}]")
            sys.exit(130)
        except Exception as e:
            console.print(f"[{ERROR}]Error: {str(e)}[/{ERROR}]")
            if args.verbose:
                import traceback

                console.print(traceback.format_exc())
            sys.exit(1)
        return

    parser.print_help()


def _handle_config_command(args, config: RelayConfig, config_manager: ConfigManager, console: Console) -> None:
    """Handle config subcommands."""
    if args.config_command != "show":
        console.print(
            f"[{WARNING}]No config subcommand specified. Use --help for available commands.[/{WARNING}]"
        )
        sys.exit(1)

    table = Table(title="Current Configuration", show_header=True, header_style=f"bold {BLUE_LIGHT}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    table.add_column("Description", style=SUBTLE)

    paths = get_paths(config_manager.working_dir)
    for name, field in RelayConfig.model_fields.items():
        table.add_row(name, str(getattr(config, name)), field.description or "")

    console.print()
    console.print(table)
    console.print()
    console.print(f"[dim]Global settings: {paths.global_settings}[/dim]")
    console.print(f"[dim]Project settings: {paths.project_settings}[/dim]")


def _handle_render_command(args, config: RelayConfig, console: Console) -> None:
    """Format a capture from a file or stdin and print it."""
    if args.file:
        path = Path(args.file)
        if not path.exists():
            console.print(f"[{ERROR}]Error: File not found: {path}[/{ERROR}]")
            sys.exit(1)
        raw = path.read_text(encoding="utf-8", errors="replace")
    else:
        raw = sys.stdin.read()

    if args.raw:
        # Escapes must reach the terminal untouched
        sys.stdout.write(
            render_code_block(strip_chrome(strip_for_display(raw)), config.message_ceiling) + "\n"
        )
        return

    formatted = format_capture(raw)
    if not formatted:
        console.print(f"[{SUBTLE}]No assistant output in the current turn.[/{SUBTLE}]")
        return
    console.print(formatted, markup=False, highlight=False)


def _handle_sessions_command(config: RelayConfig, console: Console) -> None:
    manager = TmuxSessionManager(config.session_prefix, config.tmux_binary)
    sessions = manager.list_sessions()
    if not sessions:
        console.print(f"[{WARNING}]No sessions named '{config.session_prefix}*' found.[/{WARNING}]")
        return
    for conversation_id in sessions:
        console.print(f"[{SUCCESS}]●[/{SUCCESS}] {conversation_id}  [dim]{manager.session_name(conversation_id)}[/dim]")


def _start_stdin_reader(stream) -> "asyncio.Queue[str]":
    """Feed lines from ``stream`` into a queue from a daemon thread.

    The thread is never joined, so a read still blocked when the session
    ends does not keep the process alive. An empty string marks EOF.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[str] = asyncio.Queue()

    def pump() -> None:
        while True:
            line = stream.readline()
            try:
                loop.call_soon_threadsafe(queue.put_nowait, line)
            except RuntimeError:
                # Event loop already closed
                return
            if not line:
                return

    threading.Thread(target=pump, name="stdin-reader", daemon=True).start()
    return queue


async def _watch(
    conversation_id: str, config: RelayConfig, console: Console, stdin=None
) -> None:
    """Relay one tmux session to the console until it ends or stdin closes."""
    terminal = TmuxSessionManager(config.session_prefix, config.tmux_binary)
    if not await terminal.session_exists(conversation_id):
        console.print(
            f"[{ERROR}]Error: tmux session '{terminal.session_name(conversation_id)}' not found[/{ERROR}]"
        )
        sys.exit(1)

    scheduler = DeliveryScheduler(terminal, ConsoleSurface(console), config)
    await scheduler.start_poller(conversation_id)
    poller_done = asyncio.ensure_future(scheduler.poller_task(conversation_id).wait())
    lines = _start_stdin_reader(stdin or sys.stdin)
    user_id = getpass.getuser()
    console.print(
        f"[{SUCCESS}]Watching {terminal.session_name(conversation_id)}[/{SUCCESS}] "
        f"[dim](type a message, {STOP_COMMAND} to interrupt, Ctrl-D to quit)[/dim]"
    )

    try:
        while True:
            next_line = asyncio.ensure_future(lines.get())
            await asyncio.wait({next_line, poller_done}, return_when=asyncio.FIRST_COMPLETED)
            if not next_line.done():
                # Session ended while waiting for input
                next_line.cancel()
                break
            line = next_line.result()
            if not line:
                break
            text = line.rstrip("\n")

            if text.strip() == STOP_COMMAND:
                await scheduler.request_interrupt(conversation_id)
            elif text.strip() == STATUS_COMMAND:
                console.print(f"[{SUBTLE}]{scheduler.stats.summary(conversation_id)}[/{SUBTLE}]")
            elif text.strip().startswith(OUTPUT_COMMAND):
                parts = text.split()
                count = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None
                sys.stdout.write(await scheduler.snapshot(conversation_id, count) + "\n")
            elif not await scheduler.dispatch_user_message(conversation_id, user_id, text):
                console.print(f"[{WARNING}]Message not sent.[/{WARNING}]")
    finally:
        await scheduler.stop_all()
        poller_done.cancel()


if __name__ == "__main__":
    main()
