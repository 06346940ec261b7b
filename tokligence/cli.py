"""CLI for Tokligence - run a local gateway and chat through it."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click

from tokligence import __version__
from tokligence.config import ConfigError, ConfigView
from tokligence.consent import CONSENT_FILE_NAME, ConsentGate, deny_all
from tokligence.schemas import ConsentAction, ConsentChoice, HealthState

SECRET_FIELDS = {"api_key", "openai_api_key", "anthropic_api_key", "gemini_api_key"}


def _prompt_consent(action: ConsentAction, question: str) -> str:
    """Ask for consent on the terminal."""
    click.echo(question)
    return click.prompt(
        "Choose",
        type=click.Choice([c.value for c in ConsentChoice]),
        default=ConsentChoice.CANCEL.value,
    )


def _config_view(ctx: click.Context, **overrides) -> ConfigView:
    base: ConfigView = ctx.obj["config_view"]
    merged = dict(base.overrides)
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return ConfigView(base.path, overrides=merged)


def _consent_gate(ctx: click.Context, prompt=_prompt_consent) -> ConsentGate:
    """Consent decisions live next to the config file."""
    view: ConfigView = ctx.obj["config_view"]
    return ConsentGate(prompt, store_path=view.path.parent / CONSENT_FILE_NAME)


def _load_config(view: ConfigView):
    try:
        return view.get()
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version=__version__, prog_name="tokligence")
@click.option(
    "--config", "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Config file (defaults to ~/.tokligence/config.json)",
)
@click.option("--url", default=None, help="Gateway base URL (overrides config)")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, url: str | None, verbose: int) -> None:
    """Tokligence - run a local LLM gateway and chat through it.

    Downloads and supervises the Tokligence gateway binary, checks its
    health, and talks to its OpenAI-compatible chat endpoint.
    """
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_view"] = ConfigView(config_path, overrides={"url": url})


@main.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the local gateway and stream its output until it exits.

    Press Ctrl-C to stop the gateway.
    """
    from tokligence.gateway.release import ProvisioningError
    from tokligence.gateway.supervisor import ProcessSupervisor, SupervisorError

    view = _config_view(ctx)
    config = _load_config(view)

    def echo_output(stream: str, line: str) -> None:
        click.echo(line, err=stream == "stderr")

    async def _run() -> int | None:
        supervisor = ProcessSupervisor(
            view,
            _consent_gate(ctx),
            on_output=echo_output,
            on_progress=click.echo,
        )
        async with supervisor:
            if not await supervisor.start():
                click.echo("Gateway start cancelled.")
                return None
            click.echo(f"Tokligence Gateway started on port {config.facade_port} (Ctrl-C to stop)")
            return await supervisor.wait()

    try:
        code = asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("\nTokligence Gateway stopped.")
        return
    except (ProvisioningError, SupervisorError, ConfigError) as e:
        raise click.ClickException(str(e)) from e

    if code:
        raise click.ClickException(f"Gateway exited with code {code}")


@main.command()
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_context
def status(ctx: click.Context, raw: bool) -> None:
    """Show gateway status and configured providers."""
    from tokligence.gateway.supervisor import ProcessSupervisor

    view = _config_view(ctx)
    _load_config(view)
    supervisor = ProcessSupervisor(view, _consent_gate(ctx, deny_all))
    result = asyncio.run(supervisor.status())

    if raw:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
        return

    click.echo(f"Running:   {'yes' if result.running else 'no'}")
    click.echo(f"Port:      {result.port}")
    click.echo(f"Work mode: {result.work_mode}")
    click.echo(f"PII:       {result.pii_mode if result.pii_enabled else 'disabled'}")
    click.echo(f"Providers: {', '.join(result.providers) if result.providers else 'none'}")
    if result.health is not None:
        click.echo(f"Health:    {result.health.state.value}", nl=False)
        if result.health.status_code is not None:
            click.echo(f" ({result.health.status_code})", nl=False)
        click.echo()


@main.command()
@click.option("--timeout", default=5.0, show_default=True, help="Probe timeout in seconds")
@click.pass_context
def health(ctx: click.Context, timeout: float) -> None:
    """Test the connection to the gateway's health endpoint."""
    from tokligence.gateway.health import HealthProbe, describe

    config = _load_config(_config_view(ctx))
    result = asyncio.run(HealthProbe().check(config.url, timeout=timeout, path=config.health_path))

    if result.state == HealthState.HEALTHY:
        click.echo(describe(result))
        return
    click.echo(describe(result), err=True)
    sys.exit(1)


@main.command()
@click.option("--tag", "-t", default=None, help="Release tag (defaults to the configured version)")
@click.pass_context
def download(ctx: click.Context, tag: str | None) -> None:
    """Download or update the gateway binary.

    \b
    Example:
        tokligence download
        tokligence download --tag v0.4.0
    """
    from tokligence.config import install_dir
    from tokligence.consent import ConsentDenied
    from tokligence.gateway.installer import BinaryProvisioner
    from tokligence.gateway.release import ProvisioningError

    config = _load_config(_config_view(ctx))
    version = tag or config.version
    provisioner = BinaryProvisioner(_consent_gate(ctx))

    try:
        installed = asyncio.run(
            provisioner.provision(version, install_dir(config), on_progress=click.echo)
        )
    except ConsentDenied:
        click.echo("Download cancelled.")
        return
    except ProvisioningError as e:
        raise click.ClickException(f"Download failed: {e}") from e

    click.echo(f"Gateway {version} downloaded to {installed.path}")


@main.command()
@click.option("--select", "select_model", is_flag=True, help="Pick a model and save it to the config")
@click.option("--api-key", envvar="TOKLIGENCE_API_KEY", default=None, help="Bearer token for the gateway")
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_context
def models(ctx: click.Context, select_model: bool, api_key: str | None, raw: bool) -> None:
    """List the models the gateway exposes."""
    from tokligence.chat.models import ModelListError, list_models

    view = _config_view(ctx)
    config = _load_config(view)

    try:
        names = asyncio.run(list_models(config, api_key=api_key))
    except ModelListError as e:
        if not select_model:
            raise click.ClickException(str(e)) from e
        click.echo(f"Could not list models: {e}", err=True)
        names = []

    if not select_model:
        if raw:
            click.echo(json.dumps(names, indent=2))
        elif names:
            for name in names:
                marker = "*" if name == config.model else " "
                click.echo(f" {marker} {name}")
        else:
            click.echo("No models reported by the gateway.")
        return

    if names:
        choice = click.prompt(
            "Select a model",
            type=click.Choice(names),
            default=config.model if config.model in names else None,
        )
    else:
        choice = click.prompt("Enter model name", default=config.model)

    try:
        view.update("model", choice)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Model set to {choice}")


async def _print_reply(session, text: str) -> None:
    async for fragment in session.send(text):
        click.echo(fragment, nl=False)
    click.echo()


@main.command()
@click.option("--message", "-m", default=None, help="Send one message and exit")
@click.option("--model", default=None, help="Model to chat with (overrides config)")
@click.option("--no-stream", is_flag=True, help="Wait for the full reply instead of streaming")
@click.option("--api-key", envvar="TOKLIGENCE_API_KEY", default=None, help="Bearer token for the gateway")
@click.pass_context
def chat(
    ctx: click.Context,
    message: str | None,
    model: str | None,
    no_stream: bool,
    api_key: str | None,
) -> None:
    """Chat with a model through the gateway.

    Without --message, starts an interactive session. Type /clear to reset
    the conversation and /exit to quit. Ctrl-C cancels the current reply.

    \b
    Example:
        tokligence chat -m "explain this stack trace"
        tokligence chat --model claude-3-5-sonnet
    """
    from tokligence.chat.session import ChatError, ChatSession

    view = _config_view(ctx, model=model, use_streaming=False if no_stream else None)
    _load_config(view)
    session = ChatSession(view, api_key=api_key)

    if message is not None:
        try:
            asyncio.run(_print_reply(session, message))
        except ChatError as e:
            raise click.ClickException(str(e)) from e
        return

    click.echo("Tokligence chat. /clear resets the conversation, /exit quits.")
    while True:
        try:
            text = click.prompt("you", prompt_suffix="> ")
        except click.Abort:
            click.echo()
            break

        text = text.strip()
        if not text:
            continue
        if text == "/exit":
            break
        if text == "/clear":
            session.clear()
            click.echo("Conversation cleared.")
            continue

        try:
            asyncio.run(_print_reply(session, text))
        except KeyboardInterrupt:
            session.cancel()
            click.echo("\n[cancelled]")
        except ChatError as e:
            click.echo(f"Error: {e}", err=True)


@main.group()
def consent() -> None:
    """Inspect or revoke remembered consent decisions."""
    pass


@consent.command("show")
@click.pass_context
def consent_show(ctx: click.Context) -> None:
    """List actions that are always allowed."""
    gate = _consent_gate(ctx, deny_all)
    remembered = gate.remembered()
    if remembered:
        click.echo("Always allowed:")
        for action in remembered:
            click.echo(f"  - {action.value}")
    else:
        click.echo("No remembered consent decisions.")


@consent.command("revoke")
@click.argument(
    "action",
    type=click.Choice(["start", "download", "all"]),
    default="all",
)
@click.pass_context
def consent_revoke(ctx: click.Context, action: str) -> None:
    """Forget an "always allow" decision.

    \b
    Example:
        tokligence consent revoke download
    """
    gate = _consent_gate(ctx, deny_all)
    target = None if action == "all" else ConsentAction(action)
    removed = gate.revoke(target)
    if removed:
        click.echo(f"Revoked: {', '.join(a.value for a in removed)}")
    else:
        click.echo("Nothing to revoke.")


@main.group("config")
def config_group() -> None:
    """Inspect the configuration."""
    pass


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration with secrets masked."""
    config = _load_config(_config_view(ctx))
    data = config.model_dump(mode="json")
    for key in SECRET_FIELDS:
        if data.get(key):
            data[key] = "***"
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    main()
