"""Interactive console for syncing the knowledge base and chatting as a customer."""
import asyncio
import sys

from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from .bootstrap import ContextServices, build_services, shutdown, warm_up
from .config import EMBEDDING_MODEL_NAME, GENERATION_MODEL_NAME, KNOWLEDGE_DIR, console
from .errors import CareContextError
from .observability import get_logger

logger = get_logger(__name__)


# --- UI & Formatting Functions ---

def display_welcome_banner():
    """Displays the application's welcome banner."""
    console.print(Panel(
        "[bold magenta]CareContext - Health Insurance Support Console[/bold magenta]",
        subtitle=f"[cyan]{GENERATION_MODEL_NAME} + {EMBEDDING_MODEL_NAME}[/cyan]",
        expand=False
    ))
    console.print(f"[green]Knowledge base: {KNOWLEDGE_DIR}[/green]")


def render_sync_result(result, mode: str):
    table = Table(title=f"{mode.title()} sync", show_header=False)
    table.add_row("Files processed", str(result.files_processed))
    table.add_row("Chunks added", str(result.chunks_added))
    table.add_row("Skipped", str(len(result.skipped_files)))
    table.add_row("Duration", f"{result.duration_seconds:.2f}s")
    if result.cancelled:
        table.add_row("Status", "[yellow]cancelled[/yellow]")
    console.print(table)


def render_diagnostics(diagnostics: dict):
    table = Table(title="Knowledge store")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Chunks", str(diagnostics.get("chunks", 0)))
    table.add_row("Embedding dimension", str(diagnostics.get("dimension") or "-"))
    table.add_row("Postings", str(diagnostics.get("postings", 0)))
    for scope, count in sorted(diagnostics.get("scopes", {}).items()):
        table.add_row(f"Scope {scope}", str(count))
    for doc_type, count in sorted(diagnostics.get("doc_types", {}).items()):
        table.add_row(f"Doc type {doc_type}", str(count))
    last_sync = diagnostics.get("last_sync", {})
    table.add_row("Last sync files", str(last_sync.get("files_processed", 0)))
    console.print(table)


# --- Menu Handlers ---

def handle_sync(services: ContextServices):
    mode = Prompt.ask("Sync mode", choices=["incremental", "full"], default="incremental")
    fn = services.ingestion.full_resync if mode == "full" else services.ingestion.incremental_sync
    with console.status(f"[bold cyan]Running {mode} sync...[/bold cyan]", spinner="dots"):
        result = fn()
    render_sync_result(result, mode)


def handle_chat_session(services: ContextServices):
    session_id = Prompt.ask("[bold]Session / customer id[/bold]", default="user-1")
    stream = Prompt.ask("Stream answers?", choices=["y", "n"], default="y") == "y"
    console.print("\n[bold green]Chat started.[/bold green] [italic]Type 'back' to return to menu.[/italic]")
    while True:
        message = Prompt.ask("[bold cyan]You[/bold cyan]")
        if message.strip().lower() == "back":
            break
        if not message.strip():
            continue
        try:
            if stream:
                console.print("[bold blue]Agent:[/bold blue] ", end="")
                for token in services.query_processor.stream(session_id, message):
                    console.print(token, end="", markup=False, highlight=False)
                console.print()
                continue
            with console.status("[bold cyan]Thinking...[/bold cyan]", spinner="dots"):
                turn = services.query_processor.process(session_id, message)
        except CareContextError as exc:
            logger.error("cli_chat_failed", session_id=session_id, error=str(exc))
            console.print(f"[bold red]Error: {exc}[/bold red]")
            continue

        border = "red" if turn.escalated else "blue"
        console.print(Panel(Markdown(turn.answer), title="Agent", border_style=border))
        footer = f"route={turn.route} intent={turn.intent} confidence={turn.confidence:.3f}"
        if turn.sources:
            footer += " sources=" + ", ".join(turn.sources)
        if turn.escalated:
            footer += f" escalated={turn.escalation_reason}"
        console.print(f"[dim]{footer}[/dim]")


def main():
    """Main application loop."""
    display_welcome_banner()
    services = build_services()
    with console.status("[bold cyan]Warming up (initial sync)...[/bold cyan]", spinner="dots"):
        result = asyncio.run(warm_up(services))
    if result is not None:
        render_sync_result(result, "startup")

    try:
        while True:
            try:
                console.print("\n[bold]Main Menu:[/bold]")
                console.print("[green]1. Sync Knowledge Base[/green]")
                console.print("[cyan]2. Show Diagnostics[/cyan]")
                console.print("[blue]3. Start Chat Session[/blue]")
                console.print("[red]4. Exit[/red]")

                choice = Prompt.ask("Choose an option", choices=["1", "2", "3", "4"])

                if choice == "1":
                    handle_sync(services)
                elif choice == "2":
                    render_diagnostics(services.ingestion.diagnostics())
                elif choice == "3":
                    handle_chat_session(services)
                elif choice == "4":
                    break
            except KeyboardInterrupt:
                break
    finally:
        shutdown(services)

    console.print("\n[bold magenta]Goodbye![/bold magenta]")
    sys.exit(0)


if __name__ == "__main__":
    main()
