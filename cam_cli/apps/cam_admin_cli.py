from __future__ import annotations

import argparse
import contextlib
import io
import os
import sys
from typing import Any

import click
import typer
from dotenv import load_dotenv
from rich.console import Console

from .. import __version__
from ..admin_commands import (
    cmd_accounts_event,
    cmd_accounts_list,
    cmd_accounts_upload,
    cmd_bindings_list,
    cmd_policy_upload,
    cmd_roles_list,
    cmd_roles_upload,
    cmd_stack_output,
)
from ..cli_shared import DEFAULT_STACK_NAME
from ..cli_shared import GlobalOpts
from ..cli_shared import OpError
from ..cli_shared import UsageError
from ..cli_shared import _env_or_none
from ..cli_shared import _eprint


class _InsertionOrderTyperGroup(typer.core.TyperGroup):
    def list_commands(self, ctx: click.Context) -> list[str]:
        names = list(self.commands)
        lead = [n for n in ("stack-output",) if n in names]
        head = [n for n in names if n not in set(lead)]
        return lead + head


def _bootstrap_env() -> None:
    # Discover and load .env without overriding already-exported values.
    load_dotenv()


_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {msg}")


def _root_help_text(*, root_app: typer.Typer, prog_name: str) -> str:
    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        try:
            root_app(args=["--help"], prog_name=prog_name, standalone_mode=False)
        except (typer.Exit, click.ClickException):
            pass
    return str(buf.getvalue() or "").strip()


def _render_usage_error_with_help(
    *,
    message: str,
    ctx: click.Context | None = None,
    fallback_help: str = "",
) -> None:
    _rich_error(message)
    help_text = ""
    if isinstance(ctx, click.Context):
        help_text = str(ctx.get_help() or "").strip()
    if not help_text:
        help_text = str(fallback_help or "").strip()
    if help_text:
        _eprint("")
        _eprint(help_text)


def _namespace(**kwargs: Any) -> argparse.Namespace:
    return argparse.Namespace(**kwargs)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"cam {__version__}")
        raise typer.Exit(code=0)


def _apply_global_env(args: argparse.Namespace) -> GlobalOpts:
    if getattr(args, "profile", None):
        os.environ["AWS_PROFILE"] = str(args.profile).strip()
    if getattr(args, "region", None):
        os.environ["AWS_REGION"] = str(args.region).strip()
    # If the user didn't explicitly pass --stack, defer to env.
    stack = (getattr(args, "stack", None) or _env_or_none("STACK") or DEFAULT_STACK_NAME).strip()
    return GlobalOpts(
        stack=stack,
        pretty=not bool(getattr(args, "plain_json", False)),
        quiet=bool(getattr(args, "quiet", False)),
    )


app = typer.Typer(
    name="cam",
    help="Cross-account role manager operations.",
    no_args_is_help=True,
    add_completion=False,
    cls=_InsertionOrderTyperGroup,
)
accounts_app = typer.Typer(help="Member account definitions and lifecycle events", no_args_is_help=True)
roles_app = typer.Typer(help="Role definitions", no_args_is_help=True)
policies_app = typer.Typer(help="Custom permission policy documents", no_args_is_help=True)
bindings_app = typer.Typer(help="Role-to-account bindings", no_args_is_help=True)

app.add_typer(accounts_app, name="accounts")
app.add_typer(roles_app, name="roles")
app.add_typer(policies_app, name="policies")
app.add_typer(bindings_app, name="bindings")


@app.callback()
def app_callback(
    ctx: typer.Context,
    profile: str | None = typer.Option(None, "--profile", help="AWS CLI profile name (sets AWS_PROFILE)"),
    region: str | None = typer.Option(None, "--region", help="AWS region (sets AWS_REGION)"),
    stack: str | None = typer.Option(
        None,
        "--stack",
        help=f"CloudFormation stack name (default: env STACK or {DEFAULT_STACK_NAME})",
    ),
    plain_json: bool = typer.Option(False, "--plain-json", help="Emit compact JSON output"),
    quiet: bool = typer.Option(False, "--quiet", help="Reduce stderr logging"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    del version
    g = _apply_global_env(
        _namespace(profile=profile, region=region, stack=stack, plain_json=plain_json, quiet=quiet)
    )
    ctx.obj = {"g": g}


def _ctx_global(ctx: typer.Context) -> GlobalOpts:
    obj = ctx.find_root().obj
    if isinstance(obj, dict) and isinstance(obj.get("g"), GlobalOpts):
        return obj["g"]
    return _apply_global_env(_namespace())


def _invoke(ctx: typer.Context, func: Any, **kwargs: Any) -> None:
    g = _ctx_global(ctx)
    args = _namespace(**kwargs)
    try:
        code = int(func(args, g))
    except UsageError as e:
        _render_usage_error_with_help(message=str(e), ctx=ctx)
        raise typer.Exit(code=2)
    except OpError as e:
        _rich_error(str(e))
        raise typer.Exit(code=1)

    if code:
        raise typer.Exit(code=code)


def _invoke_from_locals(
    ctx: typer.Context,
    func: Any,
    local_vars: dict[str, Any],
    *,
    drop: tuple[str, ...] = ("ctx",),
) -> None:
    _invoke(ctx, func, **{k: v for k, v in local_vars.items() if k not in drop})


@app.command("stack-output", help="Print CloudFormation stack outputs or a single output value.")
def stack_output(
    ctx: typer.Context,
    output_key: str | None = typer.Argument(None, help="Optional CloudFormation output key"),
) -> None:
    _invoke_from_locals(ctx, cmd_stack_output, locals())


@accounts_app.command("upload", help="Upload an accounts YAML file to the config bucket for ingestion.")
def accounts_upload(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Local accounts YAML file"),
) -> None:
    _invoke_from_locals(ctx, cmd_accounts_upload, locals())


@accounts_app.command("list", help="List registered accounts (group '*' lists all).")
def accounts_list(
    ctx: typer.Context,
    group: str = typer.Option("*", "--group", help="Account group to filter on"),
) -> None:
    _invoke_from_locals(ctx, cmd_accounts_list, locals())


@accounts_app.command("event", help="Publish an account lifecycle event (ADD or REMOVE) to the account topic.")
def accounts_event(
    ctx: typer.Context,
    action: str = typer.Option(..., "--action", help="ADD or REMOVE"),
    account_id: str = typer.Option(..., "--account-id", help="12-digit member account id"),
) -> None:
    _invoke_from_locals(ctx, cmd_accounts_event, locals())


@roles_app.command("upload", help="Upload a roles YAML file to the config bucket for ingestion.")
def roles_upload(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Local roles YAML file"),
) -> None:
    _invoke_from_locals(ctx, cmd_roles_upload, locals())


@roles_app.command("list", help="List role definitions recorded in the Roles registry.")
def roles_list(
    ctx: typer.Context,
    status: str | None = typer.Option(None, "--status", help="Only roles with this status"),
) -> None:
    _invoke_from_locals(ctx, cmd_roles_list, locals())


@policies_app.command("upload", help="Upload a permission policy JSON document and print its policy reference.")
def policies_upload(
    ctx: typer.Context,
    file: str = typer.Argument(..., help="Local policy JSON file"),
    name: str | None = typer.Option(None, "--name", help="Path under the policy prefix (default: file name)"),
) -> None:
    _invoke_from_locals(ctx, cmd_policy_upload, locals())


@bindings_app.command("list", help="List role-to-account bindings.")
def bindings_list(
    ctx: typer.Context,
    status: str | None = typer.Option(None, "--status", help="Only bindings with this status"),
    role: str | None = typer.Option(None, "--role", help="Only bindings for this role"),
) -> None:
    _invoke_from_locals(ctx, cmd_bindings_list, locals())


def _run_cli(*, root_app: typer.Typer, prog_name: str, argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    _bootstrap_env()
    try:
        result = root_app(args=argv, prog_name=prog_name, standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        if isinstance(e, click.UsageError):
            _render_usage_error_with_help(message=e.format_message(), ctx=getattr(e, "ctx", None))
            return int(e.exit_code)
        _rich_error(e.format_message())
        return int(e.exit_code)
    except UsageError as e:
        _render_usage_error_with_help(
            message=str(e),
            fallback_help=_root_help_text(root_app=root_app, prog_name=prog_name),
        )
        return 2
    except OpError as e:
        _rich_error(str(e))
        return 1


def main(argv: list[str] | None = None) -> int:
    return _run_cli(root_app=app, prog_name="cam", argv=argv)
