"""Typer-powered command line for ``harmonyctl``.

Each cloud workflow is a subcommand taking ``--platform``. Commands that
mutate cloud state resolve their cluster coordinates from the environment
before any CLI call is made, then hold the cluster's lock for the whole run.
"""
from __future__ import annotations

import json
import os
import textwrap
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .environment import check_tools, detect_profile, persist_exports, write_export_file
from .errors import HarmonyError
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .prereqs import CheckResult, CheckStatus, run_checks, summarize
from .prompts import InteractiveChooser, build_confirmer
from .providers import ProviderContext, StorageProvider, get_provider
from .reporting import Reporter
from .runner import CommandRunner
from .target import ClusterTarget, Platform, Stage, resolve_target

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to harmonyctl's YAML config file.",
)

PLATFORM_OPTION = typer.Option(
    ...,
    "--platform",
    "-p",
    case_sensitive=False,
    help="Cloud platform hosting the cluster.",
)

OPTIONAL_PLATFORM_OPTION = typer.Option(
    None,
    "--platform",
    "-p",
    case_sensitive=False,
    help="Also check the platform CLI and CSI driver for this cloud.",
)

CLUSTER_OPTION = typer.Option(
    None,
    "--cluster",
    envvar="CLUSTER_NAME",
    help="Cluster to use instead of choosing from a list.",
)

PERSIST_OPTION = typer.Option(
    None,
    "--persist/--no-persist",
    help="Add the variables to your shell profile (asks when omitted).",
)

CONFIGURE_KUBECTL_OPTION = typer.Option(
    True,
    "--configure-kubectl/--skip-kubectl",
    help="Point the local kubectl context at the selected cluster.",
)

TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    min=1,
    help="Override how long to wait for the CSI driver pods (seconds).",
)

DELETE_STORAGE_OPTION = typer.Option(
    False,
    "--delete-storage",
    help="Delete the storage and every related resource without prompting.",
)

NAMESPACE_OPTION = typer.Option(
    None,
    "--namespace",
    "-n",
    help="Namespace holding the Harmony secrets (defaults to the configured namespace).",
)

CHECK_STORAGE_OPTION = typer.Option(
    False,
    "--check-storage",
    help="Also check the shared storage claim and CSI driver.",
)

CHARTS_DIR_OPTION = typer.Option(
    None,
    "--charts-dir",
    file_okay=False,
    help="Directory containing the harmony-init, harmony-run and harmony-storage charts.",
)

_CHECK_STATUS_STYLE = {
    CheckStatus.PASS: "[green]PASS[/green]",
    CheckStatus.WARN: "[yellow]WARN[/yellow]",
    CheckStatus.FAIL: "[red]FAIL[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Harmony shared-storage provisioning CLI.

        Prepares AWS EFS, Azure Files NFS or Google Filestore storage for the
        Harmony Helm charts: discover the cluster, install the CSI driver,
        create the storage, and clean it up again.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect harmonyctl configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    runner: CommandRunner
    locks: LockManager
    logger: StructuredLogger
    sleep: Callable[[float], None] = time.sleep


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

    config = load_config(config_file=config_file, overrides=overrides)
    runtime = RuntimeContext(
        config=config,
        runner=CommandRunner(),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
    )
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
        help="Show the harmonyctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    try:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=int(ExitCode.USAGE)) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"harmonyctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.FAILURE),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _workflow_error(op: OperationScope, exc: HarmonyError) -> NoReturn:
    """Report a fatal workflow error, including its remediation hint."""
    if exc.hint:
        console.print(f"[yellow]{escape(exc.hint)}[/yellow]")
    _command_error(op, str(exc), errors=[f"[{exc.condition.value}] {exc}"])


def _build_provider(
    runtime: RuntimeContext,
    platform: Platform,
    op: OperationScope,
) -> tuple[StorageProvider, Reporter]:
    reporter = Reporter(console, op)
    context = ProviderContext(
        config=runtime.config,
        runner=runtime.runner,
        reporter=reporter,
        sleep=runtime.sleep,
    )
    return get_provider(platform, context), reporter


def _finish(
    op: OperationScope,
    reporter: Reporter,
    message: str,
    *,
    changed: int = 0,
    resources: Sequence[str] = (),
    context: dict[str, object] | None = None,
) -> None:
    """Close the operation as success, or as warning when notices were raised."""
    warnings = reporter.warning_messages()
    if warnings:
        console.print(f"\n[yellow]{escape(message)}[/yellow]")
        console.print(f"[yellow]Completed with {len(warnings)} warning(s):[/yellow]")
        for warning in warnings:
            console.print(f"  [yellow]- {escape(warning)}[/yellow]")
        op.warning(
            message,
            changed=changed,
            warnings=warnings,
            resources=resources,
            context=context,
        )
        return
    console.print(f"\n[green]{escape(message)}[/green]")
    op.success(message, changed=changed, resources=resources, context=context)


def _print_helm_values(values: object) -> None:
    console.print("\n[bold]Helm values:[/bold]")
    snippet = yaml.safe_dump(values, default_flow_style=False, sort_keys=False)
    console.print(snippet.rstrip(), markup=False, highlight=False)


def _resolve(op: OperationScope, platform: Platform, stage: Stage) -> ClusterTarget:
    try:
        return resolve_target(platform, stage)
    except HarmonyError as exc:
        _workflow_error(op, exc)


@app.command("setup-env")
def setup_env(
    ctx: typer.Context,
    platform: Platform = PLATFORM_OPTION,
    cluster: str | None = CLUSTER_OPTION,
    persist: bool | None = PERSIST_OPTION,
    configure_kubectl: bool = CONFIGURE_KUBECTL_OPTION,
) -> None:
    """Discover the cluster and write the environment variables later commands use."""
    runtime = _get_runtime(ctx)
    args = {
        "platform": platform.value,
        "cluster": cluster,
        "persist": persist,
        "configure_kubectl": configure_kubectl,
    }
    with runtime.logger.operation(
        "setup-env",
        args=args,
        target={"kind": "cluster", "platform": platform.value},
    ) as op:
        provider, reporter = _build_provider(runtime, platform, op)
        reporter.heading(f"{platform.display_name} cluster environment setup")
        try:
            check_tools((provider.cli_tool, "kubectl"), runtime.config, runtime.runner)
            result = provider.resolve_environment(InteractiveChooser(console), cluster=cluster)
            if configure_kubectl:
                provider.configure_kubectl(result.variables)
        except HarmonyError as exc:
            _workflow_error(op, exc)

        for name, value in result.variables.items():
            reporter.info(f"{name}={value}")
        export_file = write_export_file(runtime.config.work_dir, platform, result.variables)
        reporter.step("exports.write", f"Wrote {export_file}")

        if persist is None:
            persist = typer.confirm(
                "Add these variables to your shell profile for new terminals?",
                default=False,
            )
        if persist:
            profile = detect_profile(os.environ)
            updated = persist_exports(profile, result.variables)
            detail = f" (updated {', '.join(updated)})" if updated else ""
            reporter.step("profile.persist", f"Saved variables to {profile}{detail}")

        console.print("\nTo load the variables in this terminal, run:")
        console.print(f"  source {export_file}")
        console.print("\nNext steps:")
        console.print(f"  1. harmonyctl install-driver --platform {platform.value}")
        console.print(f"  2. harmonyctl create-storage --platform {platform.value}")
        console.print(f"  3. harmonyctl cleanup-storage --platform {platform.value}")
        _finish(
            op,
            reporter,
            "Environment ready.",
            changed=1,
            resources=[str(export_file)],
            context={"variables": dict(result.variables)},
        )


@app.command("install-driver")
def install_driver(
    ctx: typer.Context,
    platform: Platform = PLATFORM_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
) -> None:
    """Install the CSI driver for the platform's shared filesystem."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install-driver",
        args={"platform": platform.value, "timeout": timeout},
        target={"kind": "driver", "platform": platform.value},
    ) as op:
        target = _resolve(op, platform, Stage.INSTALL)
        provider, reporter = _build_provider(runtime, platform, op)
        reporter.heading(f"Installing the {provider.csi_driver_name} CSI driver")
        try:
            with runtime.locks.mutate_resources([target.lock_name()]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                check_tools(provider.required_tools, runtime.config, runtime.runner)
                provider.ensure_authenticated()
                result = provider.install_driver(target, timeout=timeout)
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HarmonyError as exc:
            _workflow_error(op, exc)

        message = "CSI driver ready." if result.ready else "CSI driver installed (not yet ready)."
        _finish(op, reporter, message, changed=1, context={"target": target.describe()})


@app.command("create-storage")
def create_storage(
    ctx: typer.Context,
    platform: Platform = PLATFORM_OPTION,
) -> None:
    """Create (or reuse) the shared filesystem and print its Helm values."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "create-storage",
        args={"platform": platform.value},
        target={"kind": "storage", "platform": platform.value},
    ) as op:
        target = _resolve(op, platform, Stage.PROVISION)
        provider, reporter = _build_provider(runtime, platform, op)
        reporter.heading(
            f"Creating {platform.display_name} shared storage for {target.cluster_name}"
        )
        try:
            with runtime.locks.mutate_resources([target.lock_name()]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                check_tools(provider.required_tools, runtime.config, runtime.runner)
                provider.ensure_authenticated()
                result = provider.provision(target)
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HarmonyError as exc:
            _workflow_error(op, exc)

        _print_helm_values(result.helm_values)
        console.print(f"\nDetails saved to {result.info_file}")
        if result.created:
            message = f"Created shared storage {result.resource_id}."
        else:
            message = f"Shared storage {result.resource_id} already exists."
        _finish(
            op,
            reporter,
            message,
            changed=1 if result.created else 0,
            resources=[result.resource_id],
            context={"target": target.describe(), "fields": dict(result.fields)},
        )


@app.command("cleanup-storage")
def cleanup_storage(
    ctx: typer.Context,
    platform: Platform = PLATFORM_OPTION,
    delete_storage: bool = DELETE_STORAGE_OPTION,
) -> None:
    """Remove the shared filesystem and the network access created for it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cleanup-storage",
        args={"platform": platform.value, "delete_storage": delete_storage},
        target={"kind": "storage", "platform": platform.value},
    ) as op:
        target = _resolve(op, platform, Stage.DEPROVISION)
        provider, reporter = _build_provider(runtime, platform, op)
        reporter.heading(
            f"Cleaning up {platform.display_name} shared storage for {target.cluster_name}"
        )
        confirmer = build_confirmer(delete_storage)
        try:
            with runtime.locks.mutate_resources([target.lock_name()]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                check_tools(provider.required_tools, runtime.config, runtime.runner)
                provider.ensure_authenticated()
                result = provider.deprovision(target, confirmer)
        except LockTimeoutError as exc:
            _command_error(op, str(exc))
        except HarmonyError as exc:
            _workflow_error(op, exc)

        if not result.found:
            _finish(op, reporter, "Nothing to clean up.", context={"target": target.describe()})
            return
        if result.preserved:
            console.print("\nKept:")
            for item in result.preserved:
                console.print(f"  {escape(item)}")
        _finish(
            op,
            reporter,
            "Cleanup complete.",
            changed=len(result.removed),
            resources=list(result.removed),
            context={
                "target": target.describe(),
                "storage_deleted": result.storage_deleted,
                "preserved": list(result.preserved),
            },
        )


def _render_checks(results: Sequence[CheckResult]) -> None:
    section: str | None = None
    for result in results:
        if result.section != section:
            section = result.section
            console.print(f"\n[bold blue]{section.title()}[/bold blue]")
        console.print(f"  {_CHECK_STATUS_STYLE[result.status]} {escape(result.message)}")


@app.command("validate")
def validate(
    ctx: typer.Context,
    platform: Platform | None = OPTIONAL_PLATFORM_OPTION,
    namespace: str | None = NAMESPACE_OPTION,
    check_storage: bool = CHECK_STORAGE_OPTION,
    charts_dir: Path | None = CHARTS_DIR_OPTION,
) -> None:
    """Check tools, cluster access, secrets and (optionally) storage before installing."""
    runtime = _get_runtime(ctx)
    resolved_namespace = namespace or runtime.config.namespace
    args = {
        "platform": platform.value if platform else None,
        "namespace": resolved_namespace,
        "check_storage": check_storage,
        "charts_dir": str(charts_dir) if charts_dir else None,
    }
    with runtime.logger.operation(
        "validate",
        args=args,
        target={"kind": "prerequisites", "namespace": resolved_namespace},
    ) as op:
        results = run_checks(
            runtime.config,
            runtime.runner,
            platform=platform,
            namespace=resolved_namespace,
            check_storage=check_storage,
            charts_dir=charts_dir,
        )
        _render_checks(results)
        summary = summarize(results)
        console.print(
            f"\nSummary: [green]{summary.passed} passed[/green], "
            f"[yellow]{summary.warnings} warning(s)[/yellow], "
            f"[red]{summary.failed} failed[/red]"
        )
        context = {"results": [result.to_dict() for result in results]}
        failures = [result.message for result in results if result.status.is_failure]
        if failures:
            op.error("Prerequisite validation failed.", errors=failures, context=context)
            raise typer.Exit(code=summary.exit_code)
        warnings = [result.message for result in results if result.status is CheckStatus.WARN]
        if warnings:
            op.warning("Prerequisites met with warnings.", warnings=warnings, context=context)
        else:
            op.success("All prerequisites met.", context=context)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
