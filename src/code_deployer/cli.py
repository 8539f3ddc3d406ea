"""Command line interface for Code Deployer."""

import logging
import signal
import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .build.project_builder import CommandProjectBuilder
from .config import Config, ConfigManager, load_repositories, save_repositories
from .daemon.scheduler import DeploymentScheduler
from .deployment.action_executor import DeploymentActionExecutor
from .exception_manager import ExceptionManager
from .exceptions import CodeDeployerError, ConfigurationMissingError
from .models import RepositoryEntry
from .services.deployment_service import DeploymentService
from .utils.exception_logger import ExceptionLogger
from .vcs.repository_manager import GitRepositoryManager

logger = logging.getLogger(__name__)

console = Console()

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
DAEMON_LOG_FILE_NAME = "daemon.log"


def _format_time(value: datetime) -> str:
    if value == datetime.min:
        return "never"
    if value == datetime.max:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _flag(value: bool) -> str:
    return "✅" if value else "·"


def build_service(config_manager: ConfigManager) -> DeploymentService:
    """Wire a DeploymentService from the loaded configuration."""
    config = config_manager.get_config()
    return DeploymentService(
        repositories_path=config_manager.get_repositories_path(),
        repository_manager=GitRepositoryManager(),
        project_builder=CommandProjectBuilder(
            config.build.command, timeout_seconds=config.build.timeout_seconds
        ),
        action_executor=DeploymentActionExecutor(
            process_timeout_seconds=config.process_timeout_seconds
        ),
        exception_manager=ExceptionManager(
            config.exception_policies, config.default_policy_name
        ),
        policy_name=config.default_policy_name,
    )


def _configure_file_logging(config_manager: ConfigManager, level: int) -> None:
    log_path = config_manager.config_path.parent / DAEMON_LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(level)
    logging.getLogger().addHandler(handler)


@click.group(invoke_without_command=True)
@click.option("--config", "-c", type=click.Path(exists=False), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--path",
    "-p",
    type=click.Path(exists=True),
    help="Start directory for config discovery (walks up to find .code-deployer/)",
)
@click.version_option(version=__version__, prog_name="code-deployer")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool, path: Optional[str]):
    """Continuous deployment daemon for git repositories.

    \b
    Watches a deployment branch in each tracked repository and, when it
    moves, updates the working copy, builds it and runs its deployment
    actions.

    \b
    GETTING STARTED:
      1. code-deployer init
      2. code-deployer add-repo web /srv/web --branch Live --interval 180
      3. code-deployer run

    \b
    CONFIGURATION:
      Config file: .code-deployer/config.json
      Repository store: .code-deployer/repositories.json
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if path:
        config_manager = ConfigManager.create_with_backtrack(Path(path).resolve())
    elif config:
        config_manager = ConfigManager(Path(config))
    else:
        config_manager = ConfigManager.create_with_backtrack()
    ctx.obj["config_manager"] = config_manager

    mode = "daemon" if ctx.invoked_subcommand == "run" else "cli"
    exception_logger = ExceptionLogger.initialize(
        config_dir=config_manager.config_path.parent, mode=mode
    )
    exception_logger.install_thread_exception_hook()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT
    )

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Overwrite existing configuration")
@click.pass_context
def init(ctx, force: bool):
    """Create a default configuration and an empty repository store."""
    config_manager: ConfigManager = ctx.obj["config_manager"]

    if config_manager.config_path.exists() and not force:
        console.print(
            f"❌ Configuration already exists at {config_manager.config_path}"
            " (use --force to overwrite)",
            style="red",
        )
        sys.exit(1)

    config_manager.save(Config())
    repositories_path = config_manager.get_repositories_path()
    if force or not repositories_path.exists():
        save_repositories([], repositories_path)

    console.print(f"✅ Configuration written to {config_manager.config_path}", style="green")
    console.print(f"📁 Repository store: {repositories_path}", style="dim")


@cli.command("add-repo")
@click.argument("name")
@click.argument("location", type=click.Path(file_okay=False))
@click.option("--branch", "-b", required=True, help="Deployment branch to watch")
@click.option("--remote", "-r", default="origin", show_default=True, help="Remote to fetch")
@click.option(
    "--interval", "-i", type=int, default=60, show_default=True, help="Check interval in minutes"
)
@click.option("--solution", "-s", default="", help="Solution or project file to build")
@click.option(
    "--configuration", default="Release", show_default=True, help="Build configuration name"
)
@click.pass_context
def add_repo(
    ctx,
    name: str,
    location: str,
    branch: str,
    remote: str,
    interval: int,
    solution: str,
    configuration: str,
):
    """Add a repository to the store."""
    config_manager: ConfigManager = ctx.obj["config_manager"]
    repositories_path = config_manager.get_repositories_path()

    try:
        repositories = load_repositories(repositories_path)
    except (CodeDeployerError, ConfigurationMissingError) as e:
        console.print(f"❌ {e}", style="red", markup=False)
        sys.exit(1)

    if any(r.name == name for r in repositories):
        console.print(f"❌ Repository {name} is already tracked", style="red")
        sys.exit(1)

    repositories.append(
        RepositoryEntry(
            name=name,
            location_path=str(Path(location).resolve()),
            remote_name=remote,
            check_interval=timedelta(minutes=interval),
            deployment_branch_name=branch,
            solution_file_to_build=solution,
            build_configuration_name=configuration,
        )
    )
    save_repositories(repositories, repositories_path)
    console.print(f"✅ Added {name} watching {remote}/{branch}", style="green")


@cli.command()
@click.pass_context
def status(ctx):
    """Show tracked repositories and their pipeline state."""
    config_manager: ConfigManager = ctx.obj["config_manager"]

    try:
        repositories = load_repositories(config_manager.get_repositories_path())
    except (CodeDeployerError, ConfigurationMissingError) as e:
        console.print(f"❌ {e}", style="red", markup=False)
        sys.exit(1)

    table = Table(title="Code Deployer Status")
    table.add_column("Repository", style="cyan")
    table.add_column("Branch", style="magenta")
    table.add_column("Update", justify="center")
    table.add_column("Build", justify="center")
    table.add_column("Deploy", justify="center")
    table.add_column("Last check", style="green")
    table.add_column("Next check", style="green")

    now = datetime.now()
    for repository in repositories:
        table.add_row(
            repository.name,
            f"{repository.remote_name}/{repository.deployment_branch_name}",
            _flag(repository.needs_update),
            _flag(repository.needs_build),
            _flag(repository.needs_deployment),
            _format_time(repository.last_checked_at),
            "due" if repository.is_due(now) else _format_time(repository.next_check_time),
        )

    console.print(table)
    if not repositories:
        console.print("No repositories tracked (use add-repo)", style="yellow")


def _print_result(label: str, ok: bool) -> None:
    if ok:
        console.print(f"✅ {label}", style="green")
    else:
        console.print(f"❌ {label}", style="red")


@cli.command()
@click.pass_context
def cycle(ctx):
    """Run one check, update, build and deploy cycle now."""
    service = build_service(ctx.obj["config_manager"])
    result = service.run_cycle()

    console.print(
        "🔍 Updates found" if result.updates_found else "🔍 No updates found"
    )
    _print_result("Build", result.build_succeeded)
    _print_result("Deploy", result.deploy_succeeded)

    if not (result.build_succeeded and result.deploy_succeeded):
        sys.exit(1)


@cli.command()
@click.pass_context
def check(ctx):
    """Check due repositories for updates without building or deploying."""
    service = build_service(ctx.obj["config_manager"])
    found = service.check_repositories_for_updates()

    for repository in service.repositories_needing_update:
        console.print(f"⬆️  {repository.name} needs an update")
    if not found:
        console.print("🔍 No updates found")


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Log every stage to the console")
@click.pass_context
def run(ctx, verbose: bool):
    """Run the deployment daemon in the foreground until interrupted."""
    config_manager: ConfigManager = ctx.obj["config_manager"]
    config = config_manager.get_config()

    level = logging.DEBUG if verbose else getattr(logging, config.log_level)
    logging.getLogger().setLevel(level)
    _configure_file_logging(config_manager, level)

    service = build_service(config_manager)
    scheduler = DeploymentScheduler(
        service,
        retry_interval_seconds=config.scheduler.retry_interval_seconds,
        max_sleep_seconds=config.scheduler.max_sleep_seconds,
    )

    stop_event = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    console.print(
        f"🚀 Deploying {len(service.all_repositories)} repositories"
        f" (next check {_format_time(service.next_check_time)})",
        style="green",
    )
    scheduler.start()
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        scheduler.stop(timeout=config.build.timeout_seconds)
        console.print("🛑 Deployment daemon stopped")


def main():
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n❌ Interrupted by user", style="red")
        sys.exit(1)
    except (CodeDeployerError, ConfigurationMissingError) as e:
        console.print(f"❌ {e}", style="red", markup=False)
        sys.exit(1)
    except Exception as e:
        console.print(f"❌ Unexpected error: {str(e)}", style="red", markup=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
