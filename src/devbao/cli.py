"""Typer-powered command line for ``devbao``.

Commands are grouped into ``node``, ``cluster`` and ``profile``. Every command
runs inside a structured operation scope (one JSON line in
``<logs>/operations.log``) and every mutating command holds the advisory locks
of the nodes and clusters it touches. Library errors are mapped to exit codes
through :class:`devbao.exit_codes.ExitCode`.
"""
from __future__ import annotations

import textwrap
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import httpx
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .cluster import Cluster, ClusterManager
from .config import AppConfig, ConfigError, load_config
from .errors import DevbaoError, ValidationError
from .exit_codes import ExitCode
from .instance_config import UI, DevConfig, FileAudit
from .locking import LockBundle, LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .node import Node, NodeManager
from .options import parse_listeners, parse_seals, parse_storage
from .process import ProcessInspector, follow_file, tail_file
from .profiles import apply_profile, get_profile, list_profiles, remove_profile
from .retry import Backoff
from .state import StateRegistry
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to devbao's YAML config file.",
)
FORCE_OPTION = typer.Option(
    False,
    "--force",
    "-f",
    help="Replace an existing record with the same name.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine readable JSON instead of a table.",
)
TYPE_OPTION = typer.Option(
    "",
    "--type",
    help="Server product: empty for auto detection, 'bao' for OpenBao or 'vault' for HashiCorp Vault.",
)
PROFILE_OPTION = typer.Option(
    None,
    "--profile",
    "-p",
    help="Profile to apply once the node is unsealed; repeatable.",
)
SEAL_OPTION = typer.Option(
    None,
    "--seal",
    help=(
        "Seal URI; repeatable. http(s)://<TOKEN>@<ADDR>/<MOUNT>/keys/<KEY> for transit, "
        "static://[<hex key>] for a static key."
    ),
)
AUDIT_OPTION = typer.Option(
    False,
    "--audit",
    help="Enable file audit devices (audit.log and audit-raw.log) after unsealing.",
)
UI_OPTION = typer.Option(False, "--ui", help="Enable the web UI.")

DEFAULT_LISTENER = "tcp:0.0.0.0:8200"


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Local OpenBao / Vault development cluster manager.

        Spawns and supervises server processes on this machine, keeps their
        credentials on disk, forms Raft HA clusters and applies ready-made
        configuration profiles.
        """
    ).strip(),
)
node_app = typer.Typer(help="Manage individual server nodes.")
cluster_app = typer.Typer(help="Manage HA Raft clusters of nodes.")
profile_app = typer.Typer(help="Apply or remove configuration profiles.")

app.add_typer(node_app, name="node")
app.add_typer(cluster_app, name="cluster")
app.add_typer(profile_app, name="profile")


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------
@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    nodes: NodeManager
    clusters: ClusterManager


def build_runtime(
    config: AppConfig,
    *,
    inspector: ProcessInspector | None = None,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] | None = None,
    clock: Callable[[], float] | None = None,
) -> RuntimeContext:
    """Wire every manager from *config*; collaborators are injectable."""
    registry = StateRegistry(config.base_dir)
    registry.ensure_root()
    templates = TemplateEngine.with_overrides(config.templates_dir)
    backoff = Backoff(
        timeout=config.stabilize.timeout,
        initial_delay=config.stabilize.initial_delay,
        max_delay=config.stabilize.max_delay,
    )
    if sleep is not None:
        backoff.sleep = sleep
    if clock is not None:
        backoff.clock = clock
    nodes = NodeManager(
        registry,
        templates,
        inspector=inspector,
        readiness=config.readiness,
        backoff=backoff,
        http_timeout=config.http_timeout,
        transport=transport,
    )
    return RuntimeContext(
        config=config,
        registry=registry,
        locks=LockManager(config.locks_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        nodes=nodes,
        clusters=ClusterManager(registry, nodes, backoff=backoff),
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the devbao version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"devbao {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]", markup=True, highlight=False)
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


@contextmanager
def _reporting(op: OperationScope) -> Iterator[None]:
    """Translate library failures into structured command errors."""
    try:
        yield
    except DevbaoError as exc:
        errors = getattr(exc, "errors", None) or [str(exc)]
        _command_error(op, str(exc), rc=int(exc.exit_code), errors=errors)
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.CONFLICT))


@contextmanager
def _locked_cluster(runtime: RuntimeContext, name: str) -> Iterator[tuple[Cluster, LockBundle]]:
    """Lock *name* and its members, then load the validated record under the lock."""
    members = runtime.clusters.load_unvalidated(name).nodes
    while True:
        with runtime.locks.mutate(nodes=members, clusters=[name]) as bundle:
            cluster = runtime.clusters.load(name)
            if set(cluster.nodes) <= set(members):
                yield cluster, bundle
                return
        # Membership changed before the lock was taken; lock the new set.
        members = cluster.nodes


def _print_warnings(op: OperationScope, warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}", highlight=False)
    if warnings:
        op.add_step("warnings", status="warning", detail=f"{len(warnings)} warning(s)")


def _emit(text: str) -> None:
    """Print *text* verbatim (no markup) for shell consumption."""
    typer.echo(text)


def _apply_profiles(
    runtime: RuntimeContext,
    op: OperationScope,
    node: Node,
    profiles: Sequence[str],
) -> list[str]:
    warnings: list[str] = []
    if not profiles:
        return warnings
    with runtime.nodes.client(node) as client:
        for name in profiles:
            warnings.extend(apply_profile(client, name))
            op.add_step("profile.apply", detail=name)
    return warnings


def _post_unseal(runtime: RuntimeContext, op: OperationScope, node: Node, profiles: Sequence[str]) -> list[str]:
    enabled = runtime.nodes.post_unseal(node)
    if enabled:
        op.add_step("audit.enable", detail=", ".join(enabled))
    return _apply_profiles(runtime, op, node, profiles)


def _audit_options(audit: bool) -> list[object]:
    if not audit:
        return []
    return [FileAudit(), FileAudit(log_raw=True)]


# ---------------------------------------------------------------------------
# node
# ---------------------------------------------------------------------------
@node_app.command("list")
def node_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List persisted nodes and whether they are running."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node list", args={"json": json_output}, target={"kind": "node"}) as op:
        with _reporting(op):
            rows = []
            for name in runtime.nodes.list_nodes():
                try:
                    node = runtime.nodes.load(name)
                except DevbaoError as exc:
                    rows.append({"name": name, "error": str(exc)})
                    continue
                try:
                    address = runtime.nodes.connect_url(node)
                except ValidationError:
                    address = ""
                rows.append(
                    {
                        "name": name,
                        "type": node.product or "auto",
                        "mode": "dev" if node.is_dev else "prod",
                        "running": runtime.nodes.is_running(node),
                        "pid": node.pid,
                        "address": address,
                        "cluster": node.cluster,
                    }
                )

        if json_output:
            console.print_json(data={"nodes": rows})
            op.success("Reported nodes as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Node", style="bold")
        table.add_column("Type")
        table.add_column("Mode")
        table.add_column("Status")
        table.add_column("Address")
        table.add_column("Cluster")
        if not rows:
            table.add_row("(none)", "", "", "", "", "")
        for row in rows:
            if "error" in row:
                table.add_row(str(row["name"]), "", "", "[red]invalid[/red]", "", "")
                continue
            status = f"[green]running[/green] ({row['pid']})" if row["running"] else "stopped"
            table.add_row(
                str(row["name"]),
                str(row["type"]),
                str(row["mode"]),
                status,
                str(row["address"]),
                str(row["cluster"]),
            )
        console.print(table)
        op.success("Reported nodes.", changed=0)


@node_app.command("start")
def node_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the node to create."),
    product: str = TYPE_OPTION,
    force: bool = FORCE_OPTION,
    listeners: list[str] | None = typer.Option(
        None,
        "--listener",
        "-l",
        help=f"Listener spec (tcp:ADDR, tcp+tls:ADDR, unix:PATH); repeatable. Defaults to {DEFAULT_LISTENER}.",
    ),
    storage: str = typer.Option("raft", "--storage", help="Storage backend: raft, file, inmem or postgresql."),
    seals: list[str] | None = SEAL_OPTION,
    audit: bool = AUDIT_OPTION,
    ui: bool = UI_OPTION,
    initialize: bool = typer.Option(False, "--initialize", help="Initialize the node after starting it."),
    unseal: bool = typer.Option(False, "--unseal", help="Unseal the node after initializing it."),
    profiles: list[str] | None = PROFILE_OPTION,
) -> None:
    """Build and start a production-mode node."""
    runtime = _get_runtime(ctx)
    profile_names = list(profiles or [])
    with runtime.logger.operation(
        "node start",
        args={
            "name": name,
            "type": product,
            "force": force,
            "listeners": list(listeners or []),
            "storage": storage,
            "initialize": initialize,
            "unseal": unseal,
            "profiles": profile_names,
        },
        target={"kind": "node", "name": name},
    ) as op:
        if unseal and not initialize:
            _command_error(op, "--unseal requires --initialize.", rc=int(ExitCode.VALIDATION))
        if profile_names and not unseal:
            _command_error(op, "Applying profiles requires --unseal.", rc=int(ExitCode.VALIDATION))

        with _reporting(op):
            for profile in profile_names:
                get_profile(profile)
            options: list[object] = [
                *parse_listeners(listeners or [DEFAULT_LISTENER]),
                parse_storage(storage),
                *parse_seals(seals or []),
                *_audit_options(audit),
            ]
            if ui:
                options.append(UI())

            with runtime.locks.mutate_nodes([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if runtime.nodes.exists(name) and not force:
                    _command_error(
                        op,
                        f"Node '{name}' already exists; pass --force to replace it.",
                        rc=int(ExitCode.CONFLICT),
                    )
                node = runtime.nodes.build(name, product, options, force=force)
                op.add_step("node.build")
                warnings = runtime.nodes.start(node)
                op.add_step("node.start", detail=f"pid={node.pid}")

                if initialize:
                    runtime.nodes.initialize(node)
                    op.add_step("node.initialize")
                if unseal:
                    runtime.nodes.unseal(node)
                    runtime.nodes.wait_until_unsealed(node)
                    op.add_step("node.unseal")
                    warnings.extend(_post_unseal(runtime, op, node, profile_names))

        _print_warnings(op, warnings)
        console.print(
            f"[green]Node '{name}' started[/green] (pid {node.pid}) at {runtime.nodes.connect_url(node)}."
        )
        op.success("Node started.", changed=1, warnings=warnings)


@node_app.command("start-dev")
def node_start_dev(
    ctx: typer.Context,
    name: str = typer.Argument("dev", help="Name of the dev node."),
    product: str = TYPE_OPTION,
    force: bool = FORCE_OPTION,
    token: str = typer.Option("devroot", "--token", help="Root token of the dev server."),
    address: str = typer.Option("127.0.0.1:8200", "--address", help="Listen address of the dev server."),
    dev_tls: bool = typer.Option(False, "--dev-tls", help="Serve the dev listener over TLS."),
    audit: bool = AUDIT_OPTION,
    ui: bool = UI_OPTION,
    profiles: list[str] | None = PROFILE_OPTION,
) -> None:
    """Build and start an ephemeral dev-mode node."""
    runtime = _get_runtime(ctx)
    profile_names = list(profiles or [])
    with runtime.logger.operation(
        "node start-dev",
        args={"name": name, "type": product, "address": address, "tls": dev_tls, "profiles": profile_names},
        target={"kind": "node", "name": name},
    ) as op:
        with _reporting(op):
            for profile in profile_names:
                get_profile(profile)
            options: list[object] = [DevConfig(token=token, address=address, tls=dev_tls), *_audit_options(audit)]
            if ui:
                options.append(UI())

            with runtime.locks.mutate_nodes([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if runtime.nodes.exists(name) and not force:
                    _command_error(
                        op,
                        f"Node '{name}' already exists; pass --force to replace it.",
                        rc=int(ExitCode.CONFLICT),
                    )
                node = runtime.nodes.build(name, product, options, force=force)
                runtime.nodes.start(node)
                op.add_step("node.start", detail=f"pid={node.pid}")
                runtime.nodes.wait_until_unsealed(node)
                warnings = _post_unseal(runtime, op, node, profile_names)

        _print_warnings(op, warnings)
        console.print(
            f"[green]Dev node '{name}' started[/green] (pid {node.pid}) at {runtime.nodes.connect_url(node)}."
        )
        op.success("Dev node started.", changed=1, warnings=warnings)


@node_app.command("resume")
def node_resume(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the node to resume."),
    unseal: bool = typer.Option(False, "--unseal", help="Unseal with the stored key shares after starting."),
) -> None:
    """Restart a stopped node from its persisted state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node resume",
        args={"name": name, "unseal": unseal},
        target={"kind": "node", "name": name},
    ) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            node = runtime.nodes.load(name)
            if runtime.nodes.is_running(node):
                console.print(f"[yellow]Node '{name}' / pid {node.pid} is already running.[/yellow]")
                op.success("Node already running.", changed=0)
                return
            warnings = runtime.nodes.resume(node)
            op.add_step("node.resume", detail=f"pid={node.pid}")
            if unseal:
                if node.is_dev:
                    warnings.append(f"Node {name} is a dev mode instance; it unsealed itself with fresh keys.")
                else:
                    runtime.nodes.wait_until_responsive(node)
                    runtime.nodes.unseal(node)
                    runtime.nodes.wait_until_unsealed(node)
                    op.add_step("node.unseal")

        _print_warnings(op, warnings)
        console.print(f"[green]Node '{name}' resumed[/green] (pid {node.pid}).")
        op.success("Node resumed.", changed=1, warnings=warnings)


@node_app.command("stop")
def node_stop(ctx: typer.Context, name: str = typer.Argument(..., help="Name of the node to stop.")) -> None:
    """Stop a running node, keeping its state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node stop", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            node = runtime.nodes.load(name)
            pid = node.pid
            stopped = runtime.nodes.kill(node)

        if stopped:
            console.print(f"[green]Stopped node '{name}'[/green] (pid {pid}).")
            op.success("Node stopped.", changed=1)
        else:
            console.print(f"[yellow]Node '{name}' / pid {pid} was already stopped.[/yellow]")
            op.success("Node already stopped.", changed=0)


@node_app.command("clean")
def node_clean(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the node to remove."),
    force: bool = typer.Option(False, "--force", "-f", help="Remove even when the record cannot be loaded."),
) -> None:
    """Stop a node and delete its directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node clean",
        args={"name": name, "force": force},
        target={"kind": "node", "name": name},
    ) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            warnings = runtime.nodes.clean(name, force=force)

        _print_warnings(op, warnings)
        console.print(f"[green]Node '{name}' cleaned.[/green]")
        op.success("Node cleaned.", changed=1, warnings=warnings)


@node_app.command("initialize")
def node_initialize(ctx: typer.Context, name: str = typer.Argument(..., help="Node to initialize.")) -> None:
    """Initialize a node and store its root token and key shares."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node initialize", args={"name": name}, target={"kind": "node", "name": name}
    ) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            node = runtime.nodes.load(name)
            runtime.nodes.initialize(node)

        console.print(f"[green]Node '{name}' initialized[/green] with {len(node.unseal_keys)} key shares.")
        op.success("Node initialized.", changed=1)


@node_app.command("unseal")
def node_unseal(ctx: typer.Context, name: str = typer.Argument(..., help="Node to unseal.")) -> None:
    """Unseal a node with its stored key shares."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node unseal", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            node = runtime.nodes.load(name)
            unsealed = runtime.nodes.unseal(node)

        if unsealed:
            console.print(f"[green]Node '{name}' unsealed.[/green]")
            op.success("Node unsealed.", changed=1)
        else:
            console.print(f"[yellow]Node '{name}' was already unsealed.[/yellow]")
            op.success("Node already unsealed.", changed=0)


@node_app.command("seal")
def node_seal(ctx: typer.Context, name: str = typer.Argument(..., help="Node to seal.")) -> None:
    """Seal a running node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node seal", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            runtime.nodes.seal(runtime.nodes.load(name))

        console.print(f"[green]Node '{name}' sealed.[/green]")
        op.success("Node sealed.", changed=1)


@node_app.command("env")
def node_env(ctx: typer.Context, name: str = typer.Argument(..., help="Node to point the server CLI at.")) -> None:
    """Print shell exports for VAULT_ADDR, VAULT_TOKEN and VAULT_CACERT."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node env", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op):
            env = runtime.nodes.get_env(runtime.nodes.load(name))
        for key, value in env.items():
            _emit(f'export {key}="{value}"')
        op.success("Reported node environment.", changed=0)


@node_app.command("dir")
def node_dir(ctx: typer.Context, name: str = typer.Argument(..., help="Node whose directory to print.")) -> None:
    """Print the node's working directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node dir", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op):
            node = runtime.nodes.load(name)
        _emit(str(runtime.nodes.directory(node)))
        op.success("Reported node directory.", changed=0)


@node_app.command("get-token")
def node_get_token(ctx: typer.Context, name: str = typer.Argument(..., help="Node to read.")) -> None:
    """Print the node's stored token."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node get-token", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op):
            node = runtime.nodes.load(name)
        _emit(node.token)
        op.success("Reported node token.", changed=0)


@node_app.command("set-token")
def node_set_token(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Node to update."),
    token: str = typer.Argument(..., help="New token."),
) -> None:
    """Replace the node's stored token, validating it when the node runs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node set-token", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            validated = runtime.nodes.set_token(runtime.nodes.load(name), token)

        suffix = "validated against the running node" if validated else "not validated; node is not running"
        console.print(f"[green]Token updated[/green] ({suffix}).")
        op.success("Node token updated.", changed=1, context={"validated": validated})


@node_app.command("get-unseal")
def node_get_unseal(ctx: typer.Context, name: str = typer.Argument(..., help="Node to read.")) -> None:
    """Print the node's stored unseal (or recovery) key shares, one per line."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node get-unseal", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op):
            node = runtime.nodes.load(name)
        for key in node.unseal_keys:
            _emit(key)
        op.success("Reported node unseal keys.", changed=0)


@node_app.command("set-unseal")
def node_set_unseal(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Node to update."),
    keys: list[str] = typer.Argument(..., help="Key shares, in order."),
) -> None:
    """Replace the node's stored unseal key shares."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("node set-unseal", args={"name": name}, target={"kind": "node", "name": name}) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            runtime.nodes.set_unseal_keys(runtime.nodes.load(name), keys)

        console.print(f"[green]Stored {len(keys)} unseal key(s) for node '{name}'.[/green]")
        op.success("Node unseal keys updated.", changed=1)


@node_app.command("set-address")
def node_set_address(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Node to update."),
    address: str = typer.Argument(..., help="Connection URL, e.g. https://127.0.0.1:8200."),
) -> None:
    """Override the URL used to reach the node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node set-address", args={"name": name, "address": address}, target={"kind": "node", "name": name}
    ) as op:
        with _reporting(op), runtime.locks.mutate_nodes([name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            validated = runtime.nodes.set_address(runtime.nodes.load(name), address)

        suffix = "validated against the running node" if validated else "not validated; node is not running"
        console.print(f"[green]Address updated[/green] ({suffix}).")
        op.success("Node address updated.", changed=1, context={"validated": validated})


def _tail(path: Path, lines: int, follow: bool) -> None:
    if not path.exists():
        raise ValidationError(f"Log file {path} does not exist.")
    for line in tail_file(path, lines):
        _emit(line)
    if not follow:
        return
    try:
        for line in follow_file(path):
            _emit(line)
    except KeyboardInterrupt:
        return


@node_app.command("tail")
def node_tail(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Node whose server log to show."),
    lines: int = typer.Option(15, "--lines", "-n", min=0, help="Number of trailing lines to show."),
    follow: bool = typer.Option(True, "--follow/--no-follow", help="Keep printing appended lines."),
) -> None:
    """Show the node's server log."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node tail", args={"name": name, "lines": lines, "follow": follow}, target={"kind": "node", "name": name}
    ) as op:
        with _reporting(op):
            node = runtime.nodes.load(name)
            _tail(runtime.nodes.directory(node) / "service.log", lines, follow)
        op.success("Showed server log.", changed=0)


@node_app.command("tail-audit")
def node_tail_audit(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Node whose audit log to show."),
    raw: bool = typer.Option(False, "--raw", help="Show the raw (unhashed) audit device instead."),
    lines: int = typer.Option(15, "--lines", "-n", min=0, help="Number of trailing lines to show."),
    follow: bool = typer.Option(True, "--follow/--no-follow", help="Keep printing appended lines."),
) -> None:
    """Show one of the node's file audit logs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "node tail-audit", args={"name": name, "raw": raw}, target={"kind": "node", "name": name}
    ) as op:
        with _reporting(op):
            node = runtime.nodes.load(name)
            matches = [audit for audit in node.config.audits if audit.log_raw == raw]
            if not matches:
                kind = "raw audit" if raw else "audit"
                raise ValidationError(f"Node {name} has no {kind} device configured.")
            _tail(matches[0].log_path(runtime.nodes.directory(node)), lines, follow)
        op.success("Showed audit log.", changed=0)


# ---------------------------------------------------------------------------
# cluster
# ---------------------------------------------------------------------------
@cluster_app.command("list")
def cluster_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List persisted clusters and their members."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cluster list", args={"json": json_output}, target={"kind": "cluster"}) as op:
        with _reporting(op):
            clusters = [runtime.clusters.load_unvalidated(name) for name in runtime.clusters.list_clusters()]

        if json_output:
            console.print_json(data={"clusters": [cluster.to_dict() for cluster in clusters]})
            op.success("Reported clusters as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Cluster", style="bold")
        table.add_column("Type")
        table.add_column("Nodes")
        if not clusters:
            table.add_row("(none)", "", "")
        for cluster in clusters:
            table.add_row(cluster.name, cluster.type, ", ".join(cluster.nodes))
        console.print(table)
        op.success("Reported clusters.", changed=0)


@cluster_app.command("start")
def cluster_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the cluster to create."),
    cluster_type: str = typer.Option("ha", "--type", help="Cluster type; only 'ha' is supported."),
    node_type: str = typer.Option("", "--node-type", help="Server product of every node."),
    count: int | None = typer.Option(None, "--count", min=1, help="Number of nodes."),
    listen: str | None = typer.Option(None, "--listen", help="Bind host of every node."),
    port: int | None = typer.Option(None, "--port", help="API port of the first node."),
    seals: list[str] | None = SEAL_OPTION,
    profiles: list[str] | None = PROFILE_OPTION,
    force: bool = FORCE_OPTION,
) -> None:
    """Start a Raft HA cluster of fresh nodes and apply profiles on the leader."""
    runtime = _get_runtime(ctx)
    defaults = runtime.config.cluster
    count = count or defaults.count
    listen = listen or defaults.listen
    port = port or defaults.port
    profile_names = list(profiles or [])
    members = [f"{name}-node-{index}" for index in range(count)]
    with runtime.logger.operation(
        "cluster start",
        args={"name": name, "count": count, "listen": listen, "port": port, "profiles": profile_names},
        target={"kind": "cluster", "name": name},
    ) as op:
        if cluster_type.lower() != "ha":
            _command_error(op, f"Unknown cluster type '{cluster_type}'; only 'ha' is supported.")
        with _reporting(op):
            for profile in profile_names:
                get_profile(profile)
            seal_options = parse_seals(seals or [])
            with runtime.locks.mutate(nodes=members, clusters=[name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if runtime.clusters.exists(name) and not force:
                    _command_error(
                        op,
                        f"Cluster '{name}' already exists; pass --force to replace it.",
                        rc=int(ExitCode.CONFLICT),
                    )
                result = runtime.clusters.start(
                    name,
                    count=count,
                    listen=listen,
                    port=port,
                    port_step=defaults.port_step,
                    product=node_type,
                    seals=seal_options,
                    profiles=profile_names,
                    force=force,
                )
                op.add_step("cluster.start", detail=f"leader={result.leader}")

        _print_warnings(op, result.warnings)
        console.print(
            f"[green]Cluster '{name}' started[/green] with {len(result.cluster.nodes)} node(s); "
            f"leader is {result.leader}."
        )
        op.success("Cluster started.", changed=len(result.cluster.nodes), warnings=result.warnings)


@cluster_app.command("build")
def cluster_build(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the cluster to create."),
    node_name: str = typer.Argument(..., help="Founding node."),
    force: bool = FORCE_OPTION,
) -> None:
    """Create an HA cluster from an existing, initialized node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cluster build", args={"name": name, "node": node_name}, target={"kind": "cluster", "name": name}
    ) as op:
        with _reporting(op), runtime.locks.mutate(nodes=[node_name], clusters=[name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            runtime.clusters.form(name, runtime.nodes.load(node_name), force=force)

        console.print(f"[green]Cluster '{name}' created[/green] with founder '{node_name}'.")
        op.success("Cluster created.", changed=2)


@cluster_app.command("join")
def cluster_join(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Cluster to extend."),
    node_name: str = typer.Argument(..., help="Running node to add."),
) -> None:
    """Join a running node to an existing cluster."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cluster join", args={"name": name, "node": node_name}, target={"kind": "cluster", "name": name}
    ) as op:
        with _reporting(op), runtime.locks.mutate(nodes=[node_name], clusters=[name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            cluster = runtime.clusters.load(name)
            runtime.clusters.join_node(cluster, runtime.nodes.load(node_name))

        console.print(f"[green]Node '{node_name}' joined cluster '{name}'.[/green]")
        op.success("Node joined cluster.", changed=2)


@cluster_app.command("remove")
def cluster_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Cluster to shrink."),
    node_name: str = typer.Argument(..., help="Member to remove."),
) -> None:
    """Remove a member from a cluster's Raft configuration and record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cluster remove", args={"name": name, "node": node_name}, target={"kind": "cluster", "name": name}
    ) as op:
        with _reporting(op), runtime.locks.mutate(nodes=[node_name], clusters=[name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            cluster = runtime.clusters.load(name)
            removed_peer = runtime.clusters.remove_node(cluster, runtime.nodes.load(node_name))

        detail = "removed raft peer" if removed_peer else "node was not a live raft peer"
        console.print(f"[green]Node '{node_name}' removed from cluster '{name}'[/green] ({detail}).")
        op.success("Node removed from cluster.", changed=2, context={"raft_peer_removed": removed_peer})


@cluster_app.command("leader")
def cluster_leader(ctx: typer.Context, name: str = typer.Argument(..., help="Cluster to query.")) -> None:
    """Print the name of the cluster's current leader."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cluster leader", args={"name": name}, target={"kind": "cluster", "name": name}) as op:
        with _reporting(op):
            leader = runtime.clusters.find_leader(runtime.clusters.load(name))
        _emit(leader.name)
        op.success("Reported cluster leader.", changed=0, context={"leader": leader.name})


@cluster_app.command("resume")
def cluster_resume(ctx: typer.Context, name: str = typer.Argument(..., help="Cluster to restart.")) -> None:
    """Restart every stopped member of a cluster."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cluster resume", args={"name": name}, target={"kind": "cluster", "name": name}) as op:
        with _reporting(op):
            with _locked_cluster(runtime, name) as (cluster, bundle):
                op.set_lock_wait_ms(bundle.wait_ms)
                warnings = runtime.clusters.resume(cluster)

        _print_warnings(op, warnings)
        console.print(f"[green]Cluster '{name}' resumed.[/green]")
        op.success("Cluster resumed.", changed=len(cluster.nodes), warnings=warnings)


@cluster_app.command("unseal")
def cluster_unseal(ctx: typer.Context, name: str = typer.Argument(..., help="Cluster to unseal.")) -> None:
    """Unseal every member of a cluster."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cluster unseal", args={"name": name}, target={"kind": "cluster", "name": name}) as op:
        with _reporting(op):
            with _locked_cluster(runtime, name) as (cluster, bundle):
                op.set_lock_wait_ms(bundle.wait_ms)
                unsealed = runtime.clusters.unseal(cluster)

        console.print(f"[green]Cluster '{name}' unsealed[/green] ({len(unsealed)} node(s) changed).")
        op.success("Cluster unsealed.", changed=len(unsealed))


@cluster_app.command("clean")
def cluster_clean(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Cluster to remove."),
    force: bool = typer.Option(False, "--force", "-f", help="Remove even when records cannot be loaded."),
) -> None:
    """Stop and delete every member and the cluster record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cluster clean", args={"name": name, "force": force}, target={"kind": "cluster", "name": name}
    ) as op:
        with _reporting(op):
            members: list[str] = []
            if runtime.clusters.exists(name):
                try:
                    members = runtime.clusters.load_unvalidated(name).nodes
                except DevbaoError:
                    if not force:
                        raise
            with runtime.locks.mutate(nodes=members, clusters=[name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                warnings = runtime.clusters.clean(name, force=force)

        _print_warnings(op, warnings)
        console.print(f"[green]Cluster '{name}' cleaned.[/green]")
        op.success("Cluster cleaned.", changed=1, warnings=warnings)


# ---------------------------------------------------------------------------
# profile
# ---------------------------------------------------------------------------
@profile_app.command("list")
def profile_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List available profiles."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("profile list", args={"json": json_output}, target={"kind": "profile"}) as op:
        profiles = list_profiles()
        if json_output:
            console.print_json(data={"profiles": [profile.to_dict() for profile in profiles]})
            op.success("Reported profiles as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Profile", style="bold")
        table.add_column("Description")
        for profile in profiles:
            table.add_row(profile.name, profile.description)
        console.print(table)
        op.success("Reported profiles.", changed=0)


def _run_profiles(ctx: typer.Context, command: str, node_name: str, names: Sequence[str], remove: bool) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command, args={"node": node_name, "profiles": list(names)}, target={"kind": "node", "name": node_name}
    ) as op:
        warnings: list[str] = []
        with _reporting(op):
            for name in names:
                get_profile(name)
            with runtime.locks.mutate_nodes([node_name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                node = runtime.nodes.load(node_name)
                with runtime.nodes.client(node) as client:
                    for name in names:
                        if remove:
                            warnings.extend(remove_profile(client, name))
                        else:
                            warnings.extend(apply_profile(client, name))
                        op.add_step("profile.remove" if remove else "profile.apply", detail=name)

        _print_warnings(op, warnings)
        verb = "removed from" if remove else "applied to"
        console.print(f"[green]Profile(s) {', '.join(names)} {verb} node '{node_name}'.[/green]")
        op.success(f"Profiles {verb} node.", changed=len(names), warnings=warnings)


@profile_app.command("apply")
def profile_apply(
    ctx: typer.Context,
    node_name: str = typer.Argument(..., help="Unsealed node to configure."),
    names: list[str] = typer.Argument(..., help="Profiles to apply, in order."),
) -> None:
    """Apply one or more profiles to a node."""
    _run_profiles(ctx, "profile apply", node_name, names, remove=False)


@profile_app.command("remove")
def profile_remove(
    ctx: typer.Context,
    node_name: str = typer.Argument(..., help="Unsealed node to reconfigure."),
    names: list[str] = typer.Argument(..., help="Profiles to remove, in order."),
) -> None:
    """Tear down one or more profiles from a node."""
    _run_profiles(ctx, "profile remove", node_name, names, remove=True)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
