# CLI tool for timekeeperctl (Typer)

"""
Command-line client of the Timekeeper daemon.
Every command is one IPC call; the daemon's JSON response is printed.
"""
import json
import os
import socket
from typing import Optional

import typer

app = typer.Typer(help="Control the Timekeeper daemon: timers, bonus time and maintenance.")

IPC_SOCKET = os.environ.get("TIMEKEEPER_SOCKET", "/run/timekeeper-daemon.sock")


def _recv_exactly(s, size):
    data = b""
    while len(data) < size:
        chunk = s.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def ipc_call(command, args=None, socket_path=None):
    """
    Send an IPC command to the daemon and return the raw response text.
    Connection problems are reported as a JSON error object, like daemon errors.
    """
    socket_path = socket_path or IPC_SOCKET
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        try:
            s.connect(socket_path)

            message = f"{command} {json.dumps(args or {})}"

            # Send message length then message
            message_data = message.encode()
            s.sendall(len(message_data).to_bytes(4, "big"))
            s.sendall(message_data)

            # Read response length then response
            len_data = _recv_exactly(s, 4)
            if len(len_data) < 4:
                return json.dumps({"error": "No response from daemon"})
            msg_len = int.from_bytes(len_data, "big")
            return _recv_exactly(s, msg_len).decode()
        except ConnectionRefusedError:
            return json.dumps(
                {
                    "error": f"Cannot connect to daemon socket at {socket_path}. Is the daemon running?"
                }
            )
        except FileNotFoundError:
            return json.dumps(
                {"error": f"Socket {socket_path} not found. Is the daemon running?"}
            )
        except OSError as e:
            return json.dumps({"error": f"Communication error: {str(e)}"})


def run_command(command, args=None):
    """
    Calls the daemon, pretty-prints the response and exits non-zero when the
    daemon reported an error or a failed operation.
    """
    result = ipc_call(command, args)
    try:
        parsed = json.loads(result)
    except (json.JSONDecodeError, ValueError):
        typer.echo(result)
        raise typer.Exit(code=1)

    typer.echo(json.dumps(parsed, indent=2))
    if isinstance(parsed, dict) and ("error" in parsed or parsed.get("ok") is False):
        raise typer.Exit(code=1)
    return parsed


def _timer_fields(name, category, weekday, weekend):
    return {
        "name": name,
        "category": category,
        "weekday_minutes": weekday,
        "weekend_minutes": weekend,
    }


@app.command()
def start(
    timer_id: int = typer.Argument(..., help="Timer to start"),
    user: int = typer.Option(..., "--user", "-u", help="Id of the timer's owner"),
):
    """Start today's session of a timer."""
    run_command("start_timer", {"timer_id": timer_id, "user_id": user})


@app.command()
def stop(
    timer_id: int = typer.Argument(..., help="Timer to stop"),
    user: int = typer.Option(..., "--user", "-u", help="Id of the timer's owner"),
):
    """Stop a running timer."""
    run_command("stop_timer", {"timer_id": timer_id, "user_id": user})


@app.command()
def pause(
    timer_id: int = typer.Argument(..., help="Timer to pause or resume"),
    user: int = typer.Option(..., "--user", "-u", help="Id of the timer's owner"),
):
    """Pause a timer, or resume it when it is paused."""
    run_command("toggle_pause", {"timer_id": timer_id, "user_id": user})


@app.command()
def status(user: int = typer.Option(..., "--user", "-u", help="User id")):
    """Show today's timers of a user."""
    run_command("get_user_timers", {"user_id": user})


@app.command()
def sweep():
    """Run one maintenance sweep now (suitable for cron)."""
    run_command("run_maintenance_sweep")


@app.command()
def create(
    admin: int = typer.Option(..., "--admin", "-a", help="Administrator user id"),
    user: int = typer.Option(..., "--user", "-u", help="Owner of the new timer"),
    name: str = typer.Option(..., "--name", "-n"),
    category: str = typer.Option(..., "--category", "-c", help="Computer, Phone, Tablet, Gaming Console or TV"),
    weekday: int = typer.Option(..., "--weekday", help="Daily minutes Monday to Friday"),
    weekend: int = typer.Option(..., "--weekend", help="Daily minutes on Saturday and Sunday"),
):
    """Create a timer for a user."""
    args = {"admin_id": admin, "user_id": user}
    args.update(_timer_fields(name, category, weekday, weekend))
    run_command("create_timer", args)


@app.command()
def update(
    timer_id: int = typer.Argument(...),
    admin: int = typer.Option(..., "--admin", "-a", help="Administrator user id"),
    name: str = typer.Option(..., "--name", "-n"),
    category: str = typer.Option(..., "--category", "-c"),
    weekday: int = typer.Option(..., "--weekday"),
    weekend: int = typer.Option(..., "--weekend"),
):
    """Change a timer. A running session already over the new limit is stopped."""
    args = {"admin_id": admin, "timer_id": timer_id}
    args.update(_timer_fields(name, category, weekday, weekend))
    run_command("update_timer", args)


@app.command()
def delete(
    timer_id: int = typer.Argument(...),
    admin: int = typer.Option(..., "--admin", "-a", help="Administrator user id"),
):
    """Deactivate a timer."""
    run_command("delete_timer", {"admin_id": admin, "timer_id": timer_id})


@app.command()
def bonus(
    timer_id: int = typer.Argument(...),
    minutes: int = typer.Argument(..., help="Minutes to add to today's quota"),
    admin: int = typer.Option(..., "--admin", "-a", help="Administrator user id"),
):
    """Grant bonus minutes on a timer for today."""
    run_command(
        "grant_bonus", {"admin_id": admin, "timer_id": timer_id, "minutes": minutes}
    )


@app.command(name="list")
def list_timers(
    user: Optional[int] = typer.Option(None, "--user", "-u", help="Only this user's timers"),
):
    """List all active timers with today's usage."""
    run_command("list_timers", {"user_id": user} if user is not None else {})


@app.command()
def logs(
    timer_id: int = typer.Argument(...),
    limit: int = typer.Option(50, "--limit", "-l", help="Number of entries to show"),
):
    """Show the audit log of a timer, newest first."""
    run_command("timer_logs", {"timer_id": timer_id, "limit": limit})


@app.command()
def commands():
    """List the commands the daemon supports."""
    run_command("describe_commands")


@app.command(name="socket-check")
def check_socket():
    """Check if the daemon socket exists and accepts connections."""
    typer.echo(f"Checking daemon socket at {IPC_SOCKET}...\n")

    if not os.path.exists(IPC_SOCKET):
        typer.echo(f"❌ Socket file not found: {IPC_SOCKET}")
        typer.echo("The daemon may not be running.")
        raise typer.Exit(code=1)

    stats = os.stat(IPC_SOCKET)
    typer.echo(f"✅ Socket file exists: {IPC_SOCKET}")
    typer.echo(f"   - Owner: {stats.st_uid}")
    typer.echo(f"   - Group: {stats.st_gid}")
    typer.echo(f"   - Permissions: {oct(stats.st_mode)[-3:]}")

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(2)
            s.connect(IPC_SOCKET)
        typer.echo("✅ Socket connection successful!")
    except ConnectionRefusedError:
        typer.echo("❌ Connection refused. The daemon may not be listening on this socket.")
        raise typer.Exit(code=1)
    except socket.timeout:
        typer.echo("❌ Connection timed out. The daemon is not responding.")
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()
