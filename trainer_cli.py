"""
Terminal client for the trainer service.
"""
import json
from typing import Optional

import requests
import typer
from prompt_toolkit import prompt as ptk_prompt
from prompt_toolkit.formatted_text import FormattedText
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.prompt import IntPrompt, Prompt
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

# --- Configuration ---
API_BASE_URL = "http://127.0.0.1:8080/api/v1"


console = Console()
app = typer.Typer(
    name="trainer-cli",
    help="Chat with the trainer service and manage queued messages.",
    add_completion=False,
)


# --- API Interaction Functions ---

def api(method: str, path: str, **kwargs) -> requests.Response:
    response = requests.request(method, f"{API_BASE_URL}{path}", **kwargs)
    response.raise_for_status()
    return response


def get_sessions() -> list:
    try:
        return api("GET", "/sessions").json()
    except requests.RequestException as e:
        console.print(f"[bold red]Service unreachable at {API_BASE_URL}[/bold red] ({e})")
        console.print("Start it with [bold]python -m trainer_service.app[/bold] and try again.")
        raise typer.Exit(1)


def create_session() -> Optional[str]:
    try:
        session_id = api("POST", "/sessions").json()["session_id"]
    except requests.RequestException as e:
        console.print(f"[bold red]Could not create session:[/bold red] {e}")
        return None
    console.print(f"✅ Started session [yellow]{session_id}[/yellow]")
    return session_id


def remove_sessions(session_id: Optional[str] = None):
    """Deletes one session, or every session when no id is given."""
    try:
        if session_id:
            api("DELETE", f"/sessions/{session_id}")
            console.print("✅ Session deleted.")
        else:
            count = api("DELETE", "/sessions").json().get("deleted_count", 0)
            console.print(f"✅ Removed {count} session(s).")
    except requests.RequestException as e:
        console.print(f"[bold red]Delete failed:[/bold red] {e}")


def get_session_history(session_id: str) -> list:
    try:
        return api("GET", f"/sessions/{session_id}/messages").json()
    except requests.RequestException as e:
        console.print(f"[bold red]Could not load history:[/bold red] {e}")
        return []


def display_history(messages: list):
    """Renders the transcript; system messages hold directive results."""
    if not messages:
        return

    console.print(Panel("Chat History", style="bold blue", expand=False))

    for msg in messages:
        role = msg.get("role", "unknown")
        content = msg.get("content", "")

        if role == "user":
            delivery = msg.get("delivery", {})
            title = "You" if delivery.get("state") == "sent" else f"You ({delivery.get('description', '')})"
            console.print(Panel(Text(content, style="cyan"), title=title, title_align="left", border_style="cyan"))
        elif role == "assistant":
            console.print(Panel(Text(content, style="green"), title="Assistant", title_align="left", border_style="green"))
        elif role == "system":
            console.print(Panel(Text(content, style="yellow"), title="Tool Results", title_align="left", border_style="yellow"))
    console.print()


def render_events(response: requests.Response, debug: bool, show_thinking: bool):
    """Prints NDJSON events from /chat/stream or a retry as they arrive."""
    text_started = False
    thinking_active = False
    spinner_active = True

    def newline():
        nonlocal text_started, thinking_active
        if text_started or thinking_active:
            console.print()
        text_started = False
        thinking_active = False

    with Live(Spinner("dots", text="[dim]Waiting for response...[/dim]"), console=console, refresh_per_second=10) as live:
        for line in response.iter_lines():
            if spinner_active:
                live.stop()
                spinner_active = False
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                if debug:
                    console.print(f"[red]Error parsing JSON: {line.decode('utf-8', errors='replace')}[/red]")
                continue

            evt_type = event.get("type")
            evt_data = event.get("data", {})

            if debug:
                console.print(f"[dim]Received event: {event}[/dim]")

            if evt_type == "text":
                if not text_started:
                    console.print("\n[bold green]Assistant:[/bold green]")
                    text_started = True
                console.print(evt_data.get("delta", ""), end="", style="green")

            elif evt_type == "think":
                if show_thinking:
                    if not thinking_active:
                        console.print("\n[dim italic]💭 Thinking:[/dim italic]")
                        thinking_active = True
                    console.print(evt_data.get("delta", ""), end="", style="dim italic")

            elif evt_type == "directive_detected":
                newline()
                description = evt_data.get("description") or evt_data.get("name")
                console.print(f"[dim]⚙ {description}[/dim]")

            elif evt_type == "tool_started":
                newline()
                console.print(Panel(f"Calling tool: [bold yellow]{evt_data.get('name')}[/bold yellow]", expand=False, border_style="yellow"))

            elif evt_type == "tool_completed":
                name = evt_data.get("name")
                if evt_data.get("success"):
                    output = str(evt_data.get("output", ""))
                    console.print(Panel(f"Tool [bold yellow]{name}[/bold yellow] output: {output[:150]}", title="Tool Output", expand=False, border_style="dim yellow"))
                else:
                    console.print(Panel(f"Tool [bold red]{name}[/bold red] error: {evt_data.get('error')}", title="Tool Error", border_style="red"))

            elif evt_type == "message" and evt_data.get("role") == "assistant" and evt_data.get("state") == "completed":
                if not text_started and evt_data.get("content"):
                    # non-streamed turns arrive whole
                    console.print("\n[bold green]Assistant:[/bold green]")
                    console.print(evt_data["content"], style="green")

            elif evt_type == "delivery":
                state = evt_data.get("state")
                if state in ("retrying", "offline", "failed"):
                    newline()
                    style = "red" if state == "failed" else "yellow"
                    console.print(f"[{style}]{evt_data.get('description')}[/{style}]")

            elif evt_type == "error":
                newline()
                console.print(Panel(f"Error: {evt_data.get('message')}", title="Error", border_style="bold red"))

            elif evt_type == "done":
                newline()
                if debug:
                    console.print(f"[dim][Reply complete after {evt_data.get('turns', 0)} turn(s)][/dim]")


def pick_session() -> tuple[Optional[str], str]:
    """Session menu. Returns (session_id, action) where action is new, resume, manage or quit."""
    sessions = get_sessions()

    table = Table(title="Sessions", border_style="blue", show_header=False)
    table.add_column("Key", style="bold cyan")
    table.add_column("Action")
    table.add_row("n", "Start a new session")
    for i, s in enumerate(sessions, start=1):
        table.add_row(str(i), f"Resume {s['session_id'][:8]} (created {s.get('created_at', '?')})")
    if sessions:
        table.add_row("x", "Delete one session")
        table.add_row("xa", "Delete every session")
    table.add_row("q", "Quit")
    console.print(table)

    keys = ["n", "q"] + [str(i) for i in range(1, len(sessions) + 1)] + (["x", "xa"] if sessions else [])
    action = Prompt.ask("\nAction", choices=keys, default="n", show_choices=False)

    if action == "n":
        return None, "new"
    if action == "q":
        return None, "quit"
    if action == "xa":
        if Prompt.ask("[bold yellow]Delete every session?[/bold yellow]", choices=["y", "n"], default="n") == "y":
            remove_sessions()
        return None, "manage"
    if action == "x":
        index = IntPrompt.ask("Session number to delete", choices=keys[2:2 + len(sessions)], show_choices=False)
        remove_sessions(sessions[index - 1]["session_id"])
        return None, "manage"
    return sessions[int(action) - 1]["session_id"], "resume"


@app.command()
def queue():
    """Show the offline queue and the connectivity flag."""
    try:
        state = api("GET", "/delivery/queue").json()
    except requests.RequestException as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    status = "[green]online[/green]" if state["connected"] else "[yellow]offline[/yellow]"
    console.print(f"Connectivity: {status}")
    if not state["queued"]:
        console.print("[dim]No queued messages.[/dim]")
        return
    for i, message_id in enumerate(state["queued"]):
        console.print(f"  [bold cyan][{i + 1}][/bold cyan] {message_id}")


@app.command()
def retry(
    session_id: str = typer.Argument(..., help="Session holding the message."),
    message_id: str = typer.Argument(..., help="The user message to resend."),
    debug: bool = typer.Option(False, "--debug", help="Print every raw event."),
):
    """Resend a failed or queued message."""
    try:
        with api("POST", f"/sessions/{session_id}/messages/{message_id}/retry", stream=True) as response:
            render_events(response, debug=debug, show_thinking=False)
    except requests.RequestException as e:
        console.print(f"[bold red]Error:[/bold red] Retry failed: {e}")
        raise typer.Exit(1)


@app.command()
def chat(
    debug: bool = typer.Option(False, "--debug", help="Enable debug mode to show detailed event information."),
    show_thinking: bool = typer.Option(True, "--show-thinking", help="Show the model's reasoning tokens."),
):
    """Interactive chat session."""
    console.print(Panel.fit(
        "[bold blue]Welcome to the trainer CLI![/bold blue]\n"
        "Plan, update and review workouts with your coach.",
        style="bold blue",
    ))

    session_id = None
    while session_id is None:
        selected_session_id, action = pick_session()
        if action == "new":
            session_id = create_session()
        elif action == "resume":
            session_id = selected_session_id
            console.print(f"✅ Resuming session: [yellow]{session_id}[/yellow]")
            display_history(get_session_history(session_id))
        elif action == "quit":
            raise typer.Exit()

    info_table = Table.grid(padding=1, expand=True)
    info_table.add_column()
    info_table.add_column(justify="right")
    info_table.add_row(
        f"Debug mode: {'[bold green]enabled[/bold green]' if debug else '[dim]disabled[/dim]'}",
        "Type [bold cyan]\\thinking[/bold cyan] to toggle thinking",
    )
    info_table.add_row("", "Type [bold cyan]\\exit[/bold cyan] or [bold cyan]\\quit[/bold cyan] to end")
    console.print(Panel(info_table, title="Chat Info", border_style="dim"))

    while True:
        try:
            user_prompt = ptk_prompt(FormattedText([("bold", "You "), ("", "(Alt+Enter for newline)\n")]), multiline=True)

            stripped_prompt = user_prompt.strip().lower()
            if not stripped_prompt:
                continue
            if stripped_prompt in ["\\exit", "\\quit"]:
                console.print("👋 Goodbye!")
                break
            if stripped_prompt == "\\thinking":
                show_thinking = not show_thinking
                console.print(f"Show thinking is now {'enabled' if show_thinking else 'disabled'}.")
                continue

            body = {"session_id": session_id, "prompt": user_prompt}
            with api("POST", "/chat/stream", json=body, stream=True) as response:
                render_events(response, debug=debug, show_thinking=show_thinking)

        except requests.RequestException as e:
            console.print(f"\n[bold red]Error:[/bold red] Could not get response from server. {e}")
        except KeyboardInterrupt:
            api("POST", "/chat/cancel", json={"session_id": session_id})
            console.print("\n[yellow]Cancelled.[/yellow]")
        finally:
            console.rule()


if __name__ == "__main__":
    app()
