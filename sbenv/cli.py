import json
import logging
import re
import sys
from pathlib import Path
from typing import NoReturn, Optional

import typer

from sbenv.activation import ActivationController, active_name
from sbenv.contracts import SBENV_VERSION
from sbenv.errors import SbenvError
from sbenv.supervisor.log_tailer import LogTailer
from sbenv.supervisor.models import EnvironmentRecord
from sbenv.supervisor.process_manager import ProcessSupervisor
from sbenv.supervisor.registry import EnvironmentRegistry
from sbenv.supervisor.settings import load_settings, resolve_home, save_settings

app = typer.Typer(help="SyftBox Env - virtualenv for SyftBox", no_args_is_help=True)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_logging(verbose: bool) -> None:
    # stderr only: stdout carries directives that shells eval.
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log supervisor activity to stderr"),
):
    """Manage isolated SyftBox environments."""
    _configure_logging(verbose)


def _registry() -> EnvironmentRegistry:
    return EnvironmentRegistry(load_settings())


def _supervisor() -> ProcessSupervisor:
    return ProcessSupervisor(_registry())


def _fail(exc: SbenvError, json_output: bool = False) -> NoReturn:
    if json_output:
        typer.echo(json.dumps(exc.to_payload(), indent=2))
    else:
        typer.echo(f"Error [{exc.error_code}]: {exc}", err=True)
    raise typer.Exit(code=exc.exit_code)


def _record_payload(record: EnvironmentRecord) -> dict:
    return record.model_dump(mode="json")


def _default_env_name(directory: Path) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", directory.name).strip("-._")
    return cleaned or "default"


def _create(
    name: str,
    dev: bool,
    server_url: Optional[str],
    email: Optional[str],
    port: Optional[int],
    json_output: bool,
) -> None:
    try:
        record = _registry().create(
            name,
            dev_mode=dev,
            server_url=server_url,
            email=email,
            preferred_port=port,
        )
    except SbenvError as exc:
        _fail(exc, json_output)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2)
    if json_output:
        typer.echo(json.dumps(_record_payload(record), indent=2))
        return
    typer.echo(f"Created environment {record.name} (port {record.port})")
    typer.echo(f"  root: {record.root_dir}")
    typer.echo(f"Activate with: eval \"$(sbenv activate {record.name})\"")


@app.command()
def create(
    name: str = typer.Argument(..., help="Name of the environment"),
    dev: bool = typer.Option(False, "--dev", help="Dev mode: local server, auth disabled"),
    server_url: Optional[str] = typer.Option(None, "--server-url", help="SyftBox server URL"),
    email: Optional[str] = typer.Option(None, "--email", help="Datasite email for the daemon config"),
    port: Optional[int] = typer.Option(None, "--port", help="Preferred daemon port"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Create a new SyftBox environment."""
    _create(name, dev, server_url, email, port, json_output)


@app.command()
def init(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Name of the environment (default: current directory name)"),
    dev: bool = typer.Option(False, "--dev", help="Dev mode: local server, auth disabled"),
    server_url: Optional[str] = typer.Option(None, "--server-url", help="SyftBox server URL"),
    email: Optional[str] = typer.Option(None, "--email", help="Datasite email for the daemon config"),
    port: Optional[int] = typer.Option(None, "--port", help="Preferred daemon port"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Initialize a new SyftBox environment named after the current directory."""
    _create(name or _default_env_name(Path.cwd()), dev, server_url, email, port, json_output)


@app.command()
def remove(
    name: str = typer.Argument(..., help="Name of the environment to remove"),
    force: bool = typer.Option(False, "--force", "-f", help="Stop a running daemon before removing"),
):
    """Remove a SyftBox environment and its directory."""
    try:
        record = _supervisor().remove(name, force=force)
    except SbenvError as exc:
        _fail(exc)
    typer.echo(f"Removed environment {record.name} (port {record.port} released)")
    if active_name() == record.name:
        typer.echo("This session still points at it; run: eval \"$(sbenv deactivate)\"", err=True)


@app.command("list")
def list_envs(
    json_output: bool = typer.Option(False, "--json", help="Print environments as JSON"),
):
    """List all SyftBox environments."""
    try:
        records = _registry().list()
    except SbenvError as exc:
        _fail(exc, json_output)
    current = active_name()
    if json_output:
        payload = [{**_record_payload(record), "active": record.name == current} for record in records]
        typer.echo(json.dumps(payload, indent=2))
        return
    if not records:
        typer.echo("No environments. Create one with: sbenv create <name>")
        return
    for record in records:
        marker = "*" if record.name == current else " "
        typer.echo(f"{marker} {record.name:<20} port {record.port:<6} {record.status.value}")


@app.command()
def activate(
    name: str = typer.Argument(..., help="Name of the environment to activate"),
    json_output: bool = typer.Option(False, "--json", help="Print directives as JSON"),
):
    """Print the shell directives that activate an environment."""
    try:
        directives = ActivationController(_registry()).activate(name)
    except SbenvError as exc:
        _fail(exc, json_output)
    typer.echo(directives.to_json() if json_output else directives.render_posix())


@app.command()
def deactivate(
    json_output: bool = typer.Option(False, "--json", help="Print directives as JSON"),
):
    """Print the shell directives that deactivate the current environment."""
    try:
        directives = ActivationController(_registry()).deactivate()
    except SbenvError as exc:
        _fail(exc, json_output)
    typer.echo(directives.to_json() if json_output else directives.render_posix())


@app.command()
def start(name: str = typer.Argument(..., help="Name of the environment")):
    """Start the SyftBox daemon for an environment."""
    try:
        record = _supervisor().start(name)
    except SbenvError as exc:
        _fail(exc)
    typer.echo(f"{record.name}: RUNNING (PID: {record.pid}, port {record.port})")


@app.command()
def stop(name: str = typer.Argument(..., help="Name of the environment")):
    """Stop the SyftBox daemon for an environment."""
    try:
        result = _supervisor().stop(name)
    except SbenvError as exc:
        _fail(exc)
    if result.already_stopped:
        typer.echo(f"{name}: daemon had already exited (status: {result.record.status.value})")
        return
    suffix = " after SIGKILL" if result.forced else ""
    typer.echo(f"{name}: STOPPED{suffix}")


@app.command()
def status(
    name: Optional[str] = typer.Argument(None, help="Environment to check (default: all)"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Show live daemon status, reconciled against the process table."""
    try:
        records = _supervisor().status(name)
    except SbenvError as exc:
        _fail(exc, json_output)
    if json_output:
        typer.echo(json.dumps([_record_payload(record) for record in records], indent=2))
        return
    if not records:
        typer.echo("No environments.")
        return
    for record in records:
        line = f"{record.name}: {record.status.value.upper()}"
        if record.pid is not None:
            line += f" (PID: {record.pid}, port {record.port})"
        elif record.last_exit_code is not None:
            line += f" (last exit code {record.last_exit_code})"
        typer.echo(line)


@app.command()
def info(
    name: Optional[str] = typer.Argument(None, help="Environment (default: the active one)"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Show details for an environment."""
    supervisor = _supervisor()
    try:
        env_name = name or ActivationController(supervisor.registry).current().name
        record = supervisor.status(env_name)[0]
    except SbenvError as exc:
        _fail(exc, json_output)
    http = supervisor.probe_http(record) if record.pid is not None else None
    is_active = active_name() == record.name
    if json_output:
        typer.echo(json.dumps({**_record_payload(record), "active": is_active, "http": http}, indent=2))
        return
    typer.echo(f"ENVIRONMENT ({record.name}){' [active]' if is_active else ''}")
    typer.echo(f"  status:     {record.status.value}")
    typer.echo(f"  pid:        {record.pid if record.pid is not None else '-'}")
    typer.echo(f"  port:       {record.port}")
    typer.echo(f"  root:       {record.root_dir}")
    typer.echo(f"  server:     {record.server_url}")
    typer.echo(f"  dev mode:   {'yes' if record.dev_mode else 'no'}")
    typer.echo(f"  config:     {record.config_path}")
    typer.echo(f"  log:        {record.log_path}")
    typer.echo(f"  created:    {record.created_at.isoformat()}")
    if http is not None:
        state = f"HTTP {http['status_code']}" if http["reachable"] else "unreachable"
        typer.echo(f"  http:       {http['url']} ({state})")


@app.command()
def logs(
    name: Optional[str] = typer.Argument(None, help="Environment (default: the active one)"),
    lines: int = typer.Option(10, "--lines", "-n", help="Number of trailing lines"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep printing appended lines"),
):
    """Print the daemon log for an environment."""
    registry = _registry()
    tailer = LogTailer(registry)
    try:
        env_name = name or ActivationController(registry).current().name
        if not follow:
            for line in tailer.read(env_name, lines):
                typer.echo(line)
            return
        stream = tailer.follow(env_name, lines)
    except SbenvError as exc:
        _fail(exc)
    try:
        for line in stream:
            typer.echo(line)
    except KeyboardInterrupt:
        pass
    finally:
        stream.close()


def _parse_setting_value(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@app.command()
def config(
    key: Optional[str] = typer.Argument(None, help="Setting to show or change"),
    value: Optional[str] = typer.Argument(None, help="New value (JSON literal or plain string)"),
    json_output: bool = typer.Option(False, "--json"),
):
    """Show or change persistent sbenv settings in <SBENV_HOME>/config.json."""
    home = resolve_home()
    # Environment overrides such as SBENV_DAEMON_BIN must not be persisted.
    current = load_settings(home, environ={}).model_dump(mode="json", exclude={"home"})
    if key is not None and key not in current:
        typer.echo(f"Error: unknown setting '{key}'", err=True)
        typer.echo(f"  allowed: {', '.join(sorted(current))}", err=True)
        raise typer.Exit(code=2)

    if key is not None and value is not None:
        current[key] = _parse_setting_value(value)
        try:
            current = save_settings(current, home)
        except (ValueError, TypeError) as exc:
            typer.echo(f"Error: {exc}", err=True)
            raise typer.Exit(code=2)

    shown = current if key is None else {key: current[key]}
    if json_output:
        typer.echo(json.dumps(shown, indent=2))
        return
    for name, setting in shown.items():
        typer.echo(f"{name} = {json.dumps(setting)}")


@app.command()
def version():
    """Print the sbenv version."""
    typer.echo(f"sbenv {SBENV_VERSION}")


if __name__ == "__main__":
    app()
