"""
Interactive terminal chat with Rich UI.

Provides a REPL for the local chat runtime with:
- Live streaming of replies rendered as markdown
- Multiple saved conversations (/new, /chats, /load, /delete)
- File attachments merged into the next prompt
- Ctrl+C to stop a reply that is being generated
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from .accelerated import AcceleratedBackend
from .attachments import format_file_size
from .config import config
from .engine import EngineKind
from .errors import EngineConstructionFailed, LocalChatError
from .events import SessionListener
from .session import GenerationSettings, StreamingSessionController, build_controller
from .storage import SQLiteKeyValueStore

logger = logging.getLogger(__name__)

RUNTIME_LABELS = {
    EngineKind.UNDETERMINED: "Detecting runtime…",
    EngineKind.HARDWARE: "GPU (transformers)",
    EngineKind.SOFTWARE: "CPU fallback",
    EngineKind.UNAVAILABLE: "Demo Mode",
}


def _message_panel(role: str, text: str) -> Panel:
    if role == "user":
        return Panel(Text(text), title="[bold blue]You[/bold blue]", border_style="blue", padding=(0, 1))
    return Panel(
        Markdown(text or "(no output)", code_theme="monokai"),
        title="[bold green]🤖 Assistant[/bold green]",
        border_style="green",
        padding=(1, 2),
    )


class RichListener(SessionListener):
    """Renders runtime notifications on a Rich console."""

    def __init__(self, console: Console):
        self.console = console
        self.status = None
        self.live: Optional[Live] = None

    def on_progress(self, phase: str, percent: Optional[float] = None) -> None:
        text = phase if percent is None else f"{phase} ({percent:.0f}%)"
        if self.status is not None:
            self.status.update(f"[cyan]{text}")
        else:
            self.console.print(f"[dim cyan]{text}[/dim cyan]")

    def on_ready(self, kind) -> None:
        self.console.print(f"[green]✓ Runtime: {RUNTIME_LABELS.get(kind, kind)}[/green]")

    def on_message_appended(self, role: str, text: str) -> None:
        if self.live is not None:
            # The user already sees what they typed
            if role == "assistant":
                self.live.update(_message_panel(role, text))
            return
        self.console.print(_message_panel(role, text))

    def on_stream_delta(self, partial_text: str) -> None:
        if self.live is not None:
            self.live.update(_message_panel("assistant", partial_text))

    def on_error(self, message: str) -> None:
        self.console.print(f"[red]✗ {message}[/red]")


class RichChatCLI:
    """Interactive chat REPL over a StreamingSessionController."""

    def __init__(self, console: Console, history_file: str = ".localchat_history"):
        """
        Initialize the chat CLI.

        Args:
            console: Rich console used for all output
            history_file: Path to file for persistent prompt history
        """
        self.console = console
        self.listener = RichListener(console)
        self.controller: Optional[StreamingSessionController] = None

        # Key bindings for Meta+Enter to submit
        kb = KeyBindings()

        @kb.add("escape", "enter")
        def _(event):
            """Submit on Meta+Enter (ESC+Enter)"""
            event.current_buffer.validate_and_handle()

        self.session = PromptSession(
            history=FileHistory(history_file),
            auto_suggest=AutoSuggestFromHistory(),
            multiline=True,
            enable_history_search=True,
            key_bindings=kb,
        )

    @property
    def context(self):
        return self.controller.context

    def print_welcome(self):
        """Display welcome message with Rich formatting."""
        welcome_text = """
# 🤖 Local Chat

Everything runs on this device; nothing is sent to a server.

- Type your message (supports **multiple lines**)
- Press **Meta+Enter** (ESC then Enter) or **Alt+Enter** to submit
- Press **Ctrl+C** while a reply is streaming to stop it
- Type `/help` for available commands
        """
        self.console.print(
            Panel(
                Markdown(welcome_text),
                title="[bold blue]Welcome[/bold blue]",
                border_style="blue",
                padding=(1, 2),
            )
        )
        self.console.print()

    def print_help(self):
        """Display help with Rich formatting."""
        help_text = """
# 📖 Available Commands

| Command | Description |
|---------|-------------|
| `/help`, `/h` | Show this help message |
| `/new` | Start a new chat |
| `/chats` | List saved chats |
| `/load <n>` | Switch to chat number n |
| `/delete [n]` | Delete chat n (default: current) |
| `/rename <title>` | Rename the current chat |
| `/clear` | Discard the current chat and start a new one |
| `/clear-all` | Delete all chat history |
| `/attach <path>` | Attach a file to the next messages |
| `/files` | List attached files |
| `/detach <n>\\|all` | Remove an attached file |
| `/models` | List available models |
| `/model <id>` | Reload with another model (GPU only) |
| `/temperature <x>` | Set sampling temperature |
| `/seed <n>` | Set sampling seed |
| `/history` | Show the current conversation |
| `/export [file]` | Export the current chat to markdown |
| `/exit`, `/quit`, `/q` | Exit the chat |
        """
        self.console.print(
            Panel(
                Markdown(help_text),
                title="[bold green]Help[/bold green]",
                border_style="green",
                padding=(1, 2),
            )
        )
        self.console.print()

    def print_chats(self):
        history = self.context.history
        table = Table(title="Recent chats", show_lines=False)
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Title")
        table.add_column("Messages", justify="right")
        for i, chat in enumerate(history.conversations, 1):
            marker = " [green]●[/green]" if chat.id == history.active_id else ""
            table.add_row(str(i), f"{chat.title}{marker}", str(len(chat.messages) - 1))
        self.console.print(table)
        self.console.print()

    def print_files(self):
        attachments = self.context.attachments.items()
        if not attachments:
            self.console.print("[yellow]No files attached.[/yellow]\n")
            return
        table = Table(title="Attached files")
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Name")
        table.add_column("Size", justify="right")
        table.add_column("Type")
        for i, a in enumerate(attachments, 1):
            table.add_row(str(i), a.name, format_file_size(a.size_bytes), a.mime_type or "unknown")
        self.console.print(table)
        self.console.print()

    def print_models(self):
        selector = self.context.selector
        models = selector.models()
        if not models:
            self.console.print("[yellow]No model catalog available.[/yellow]\n")
            return
        table = Table(title="Models")
        table.add_column("Model")
        table.add_column("Size")
        for m in models:
            marker = " [green]●[/green]" if m.model_id == selector.handle.model_id else ""
            table.add_row(f"{m.model_id}{marker}", "Small" if m.size_class == "small" else "Large")
        self.console.print(table)
        self.console.print()

    def print_history(self):
        """Print the current conversation with Rich formatting."""
        messages = [m for m in self.context.conversation if m.role != "system"]
        if not messages:
            self.console.print("[yellow]No conversation history yet.[/yellow]\n")
            return

        history_text = "# 📜 Conversation History\n\n"
        for i, msg in enumerate(messages, 1):
            content = msg.content
            if len(content) > 100:
                content = content[:97] + "..."
            history_text += f"{i}. **[{msg.role.upper()}]** {content}\n\n"

        self.console.print(
            Panel(
                Markdown(history_text),
                title="[bold cyan]History[/bold cyan]",
                border_style="cyan",
                padding=(1, 2),
            )
        )
        self.console.print()

    def export_conversation(self, filename: str = "conversation.md"):
        """Export the current chat to a markdown file."""
        active = self.context.history.active
        try:
            with open(filename, "w", encoding="utf-8") as f:
                f.write(f"# {active.title if active else 'Chat Conversation'}\n\n")
                f.write(f"**Model**: {self.context.selector.handle.model_id or 'none'}\n\n")
                f.write("---\n\n")
                for msg in self.context.conversation:
                    f.write(f"## {msg.role.title()}\n\n{msg.content}\n\n")
            self.console.print(f"[green]✓ Conversation exported to {filename}[/green]\n")
        except OSError as e:
            self.console.print(f"[red]✗ Error exporting: {e}[/red]\n")

    def _resolve_chat(self, arg: Optional[str]) -> Optional[str]:
        history = self.context.history
        if not arg:
            return history.active_id
        if arg.isdigit():
            index = int(arg) - 1
            if 0 <= index < len(history.conversations):
                return history.conversations[index].id
            return None
        matches = [c.id for c in history.conversations if c.id.startswith(arg)]
        return matches[0] if len(matches) == 1 else None

    async def handle_command(self, command: str) -> bool:
        """
        Handle special commands.

        Args:
            command: The command string (including /)

        Returns:
            True if should exit, False otherwise
        """
        parts = command.strip().split(maxsplit=1)
        cmd = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else None

        if cmd in ["/exit", "/quit", "/q"]:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]\n")
            return True

        elif cmd in ["/help", "/h"]:
            self.print_help()

        elif cmd == "/new":
            self.controller.new_conversation()
            self.console.print("[green]✓ New chat started[/green]\n")

        elif cmd == "/chats":
            self.print_chats()

        elif cmd == "/load":
            chat_id = self._resolve_chat(args)
            if chat_id is None or not args:
                self.console.print("[red]✗ Usage: /load <n> (see /chats)[/red]\n")
            else:
                self.console.rule("[dim]Loaded chat[/dim]")
                self.controller.select_conversation(chat_id)
                self.console.print()

        elif cmd == "/delete":
            chat_id = self._resolve_chat(args)
            if chat_id is None:
                self.console.print("[red]✗ No such chat (see /chats)[/red]\n")
            elif Confirm.ask("Are you sure you want to delete this chat?", console=self.console):
                self.controller.delete_conversation(chat_id)
                self.console.print("[green]✓ Chat deleted[/green]\n")

        elif cmd == "/rename":
            if not args:
                self.console.print("[red]✗ Usage: /rename <title>[/red]\n")
            else:
                self.context.history.rename_conversation(self.context.history.active_id, args)
                self.console.print("[green]✓ Chat renamed[/green]\n")

        elif cmd in ["/clear", "/reset"]:
            self.controller.clear_conversation()
            self.console.print("[green]✓ Conversation cleared[/green]\n")

        elif cmd == "/clear-all":
            if Confirm.ask(
                "Are you sure you want to delete all chat history? This cannot be undone.",
                console=self.console,
            ):
                self.controller.clear_all_history()
                self.console.print("[green]✓ All chats cleared[/green]\n")

        elif cmd == "/attach":
            if not args:
                self.console.print("[red]✗ Usage: /attach <path>[/red]\n")
            else:
                try:
                    attachment = self.context.attachments.add_file(args)
                    self.console.print(
                        f"[green]✓ Attached {attachment.name} ({format_file_size(attachment.size_bytes)})[/green]\n"
                    )
                except OSError as e:
                    self.console.print(f"[red]✗ Error reading file {args}: {e}[/red]\n")

        elif cmd == "/files":
            self.print_files()

        elif cmd == "/detach":
            attachments = self.context.attachments
            if args == "all":
                attachments.clear()
                self.console.print("[green]✓ All files removed[/green]\n")
            elif args and args.isdigit() and 0 < int(args) <= len(attachments):
                removed = attachments.items()[int(args) - 1]
                attachments.remove(removed.id)
                self.console.print(f"[green]✓ Removed {removed.name}[/green]\n")
            else:
                self.console.print("[red]✗ Usage: /detach <n>|all (see /files)[/red]\n")

        elif cmd == "/models":
            self.print_models()

        elif cmd == "/model":
            if not args:
                self.console.print("[red]✗ Usage: /model <id> (see /models)[/red]\n")
            else:
                await self.reload_model(args)

        elif cmd == "/temperature":
            try:
                self.context.settings.temperature = float(args)
                self.console.print(f"[green]✓ Temperature set to {self.context.settings.temperature}[/green]\n")
            except (TypeError, ValueError):
                self.console.print("[red]✗ Usage: /temperature <number>[/red]\n")

        elif cmd == "/seed":
            try:
                self.context.settings.seed = int(args)
                self.console.print(f"[green]✓ Seed set to {self.context.settings.seed}[/green]\n")
            except (TypeError, ValueError):
                self.console.print("[red]✗ Usage: /seed <integer>[/red]\n")

        elif cmd == "/history":
            self.print_history()

        elif cmd == "/export":
            self.export_conversation(args or "conversation.md")

        else:
            self.console.print(f"[red]✗ Unknown command: {cmd}[/red]")
            self.console.print("Type [green]/help[/green] for available commands\n")

        return False

    async def initialize_engine(self):
        """Load the best available engine, showing progress while it loads."""
        with self.console.status("[cyan]Initializing AI model...", spinner="dots", spinner_style="cyan") as status:
            self.listener.status = status
            try:
                await self.context.selector.detect_and_initialize()
                self.console.print("[green]✅ AI model loaded![/green]\n")
            except EngineConstructionFailed as e:
                self.console.print(
                    f"[yellow]You can still use demo mode by typing questions! ({e})[/yellow]\n"
                )
            finally:
                self.listener.status = None

    async def reload_model(self, model_id: str):
        with self.console.status("[cyan]Reloading model...", spinner="dots") as status:
            self.listener.status = status
            try:
                await self.controller.reload_model(model_id)
                self.console.print(f"[green]✓ Now using {model_id}[/green]\n")
            except LocalChatError as e:
                self.console.print(f"[red]✗ {e}[/red]\n")
            except Exception as e:
                logger.error(f"Model reload failed: {e}", exc_info=True)
                self.console.print(f"[red]✗ Model reload failed, keeping the current model: {e}[/red]\n")
            finally:
                self.listener.status = None

    async def send(self, text: str):
        """Send a prompt, streaming the reply; Ctrl+C stops generation."""
        loop = asyncio.get_running_loop()
        handler_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self.controller.cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler unavailable, Ctrl+C will not cancel replies")

        thinking = Panel(
            Text("🧠 Processing your question...", style="dim"),
            title="[bold green]🤖 Assistant[/bold green]",
            border_style="green",
        )
        try:
            with Live(thinking, refresh_per_second=10, console=self.console) as live:
                self.listener.live = live
                reply = await self.controller.send(text)
        finally:
            self.listener.live = None
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

        if reply is None:
            self.console.print("[yellow]⏹️ Request cancelled by user[/yellow]")

    def print_ready_indicator(self):
        """Display ready indicator showing assistant is waiting for input."""
        from rich.rule import Rule

        self.console.print(Rule("[dim green]Ready[/dim green]", style="dim green", characters="·"))
        self.console.print()

    async def run(self):
        """Start the interactive chat loop."""
        while True:
            try:
                prompt_text = HTML("<ansiblue><b>You</b></ansiblue> <ansicyan>➜</ansicyan> ")
                user_input = (await self.session.prompt_async(prompt_text, multiline=True)).strip()

                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if await self.handle_command(user_input):
                        break
                    continue

                self.console.print()
                await self.send(user_input)
                self.print_ready_indicator()

            except KeyboardInterrupt:
                self.console.print(
                    "\n[yellow]⚠ Interrupted. Type /exit to quit or continue chatting.[/yellow]\n"
                )
                continue

            except EOFError:
                self.console.print("\n[yellow]👋 Goodbye![/yellow]\n")
                break


async def _run(args, console: Console):
    cli = RichChatCLI(console, history_file=args.history_file)
    cli.print_welcome()

    store = SQLiteKeyValueStore(args.store)
    settings = GenerationSettings()
    if args.temperature is not None:
        settings.temperature = args.temperature
    if args.seed is not None:
        settings.seed = args.seed

    controller = build_controller(
        store,
        listeners=[cli.listener],
        primary=AcceleratedBackend(use_gpu=False if args.cpu else None),
        settings=settings,
    )
    if args.model:
        selector = controller.context.selector
        selector.preferred_models = [args.model] + list(selector.preferred_models)
    cli.controller = controller
    logger.debug(f"Configuration: {config.summary()}")

    try:
        await cli.initialize_engine()
        await cli.run()
    finally:
        controller.cancel()
        controller.context.history.flush()
        store.close()


def main():
    """Main entry point for the chat CLI."""
    parser = argparse.ArgumentParser(description="Chat with a local language model")
    parser.add_argument(
        "--model", type=str, default=None, help="Preferred model ID for the GPU backend"
    )
    parser.add_argument(
        "--cpu", action="store_true", help="Skip the GPU backend and use the CPU fallback"
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=None,
        help=f"Sampling temperature (default: {config.TEMPERATURE})",
    )
    parser.add_argument(
        "--seed", type=int, default=None, help=f"Sampling seed (default: {config.SEED})"
    )
    parser.add_argument(
        "--store",
        type=str,
        default=config.STORE_PATH,
        help=f"Chat history database (default: {config.STORE_PATH})",
    )
    parser.add_argument(
        "--history-file",
        type=str,
        default=".localchat_history",
        help="File to store prompt history (default: .localchat_history)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show detailed technical logs for debugging",
    )

    args = parser.parse_args()

    # Configure logging with Rich handler
    from rich.logging import RichHandler

    log_level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False, show_path=False)],
    )

    console = Console()

    try:
        asyncio.run(_run(args, console))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠ Interrupted. Exiting...[/yellow]")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Failed to start chat: {e}")
        console.print(f"\n[red]✗ Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
