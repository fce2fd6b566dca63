"""
Command Line Interface for stackorch.
"""
import logging
import os
import threading

import click

from ..DRIVERS.local_images import LocalImageProvider
from ..DRIVERS.process_driver import ProcessRuntimeDriver
from ..errors import LoadError, ScaleError
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.named_resource import ResourceKind
from ..PARSERS.compose_parser import ComposeParser
from ..RUNNERS.dependency_resolver import ServiceGraph
from ..settings import OrchestratorSettings

DEFAULT_FILES = ('stack.yml', 'docker-compose.yml')


def _parse_scale(values):
    """Turns ('web=3', ...) into {'web': 3}."""
    requests = {}
    for value in values:
        service, sep, count = value.partition('=')
        if not sep or not count.isdigit():
            raise click.BadParameter(f"expected SERVICE=N, got {value!r}", param_hint='--scale')
        requests[service] = int(count)
    return requests


def _print_ps(orchestrator, handle):
    click.echo(f"{'SERVICE':20} {'STATUS':30}")
    click.echo("-" * 51)
    for name, state in orchestrator.ps(handle).items():
        click.echo(f"{name:20} {state:30}")


@click.group()
@click.option('--file', '-f', 'files', multiple=True, help='Stack file path (repeat to overlay files)')
@click.option('--project-name', '-p', default=None, help='Prefix for instance and resource names')
@click.option('--log-level', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.pass_context
def cli(ctx, files, project_name, log_level):
    """
    stackorch - dependency-aware orchestration of multi-service stacks.

    Runs compose-style stacks as native processes.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    if not files:
        files = tuple(f for f in DEFAULT_FILES if os.path.exists(f))[:1] or (DEFAULT_FILES[0],)

    ctx.ensure_object(dict)
    ctx.obj['files'] = list(files)
    ctx.obj['base_dir'] = os.path.dirname(os.path.abspath(files[0]))
    ctx.obj['settings'] = OrchestratorSettings.from_env(project_name=project_name)


def _load_stack(ctx):
    try:
        return ComposeParser().load_files(ctx.obj['files'])
    except LoadError as e:
        raise click.ClickException(str(e))


def _project(ctx, definition):
    settings = ctx.obj['settings']
    if 'project_name' in settings.model_fields_set:
        return settings.project_name
    return definition.name


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the stack and print its startup batches."""
    definition = _load_stack(ctx)
    try:
        graph = ServiceGraph.load(definition.services, definition.edges())
    except LoadError as e:
        raise click.ClickException(str(e))
    click.echo(f"Project: {_project(ctx, definition)}")
    for number, batch in enumerate(graph.startup_batches(), start=1):
        click.echo(f"Batch {number}: {', '.join(batch)}")


@cli.command()
@click.option('--scale', 'scale', multiple=True, metavar='SERVICE=N', help='Set the replica count of a service')
@click.option('--timeout', '-t', type=float, default=None, help='Stop the stack after this many seconds')
@click.pass_context
def up(ctx, scale, timeout):
    """Start the stack and keep it running until Ctrl+C."""
    requests = _parse_scale(scale)
    definition = _load_stack(ctx)
    settings = ctx.obj['settings']
    base_dir = ctx.obj['base_dir']

    orchestrator = ServiceOrchestrator(
        LocalImageProvider(base_dir),
        ProcessRuntimeDriver(base_dir, settings=settings),
        settings=settings,
    )
    try:
        handle = orchestrator.load(definition, _project(ctx, definition))
    except LoadError as e:
        orchestrator.close()
        raise click.ClickException(str(e))

    failed = False
    try:
        result = orchestrator.up(handle)
        if not result.success:
            click.echo(result.summary(), err=True)
            failed = True
        for service, replicas in requests.items():
            if failed:
                break
            try:
                scaled = orchestrator.scale(handle, service, replicas)
            except ScaleError as e:
                click.echo(f"Error: {e}", err=True)
                failed = True
                break
            if not scaled.success:
                click.echo(scaled.summary(), err=True)
                failed = True

        _print_ps(orchestrator, handle)
        if not failed:
            click.echo("Running... Press Ctrl+C to stop.")
            threading.Event().wait(timeout)
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
    finally:
        stopped = orchestrator.down(handle)
        orchestrator.prune(ResourceKind.NETWORK)
        orchestrator.close()

    if not stopped.success:
        click.echo(stopped.summary(), err=True)
        failed = True
    else:
        click.echo("Services stopped.")
    if failed:
        ctx.exit(1)


@cli.group()
def volume():
    """Manage the project's named volumes."""


def _project_volumes(ctx):
    definition = _load_stack(ctx)
    driver = ProcessRuntimeDriver(ctx.obj['base_dir'], settings=ctx.obj['settings'])
    prefix = f"{_project(ctx, definition)}_"
    return driver, [v for v in driver.volume_manager.list_volumes() if v.startswith(prefix)]


@volume.command('ls')
@click.pass_context
def volume_ls(ctx):
    """List volume directories of this project."""
    _, names = _project_volumes(ctx)
    for name in names:
        click.echo(name)


@volume.command('prune')
@click.option('--force', is_flag=True, help='Do not prompt for confirmation')
@click.pass_context
def volume_prune(ctx, force):
    """Remove volume directories of this project. The stack must not be running."""
    driver, names = _project_volumes(ctx)
    if not names:
        click.echo("No volumes to remove.")
        return
    if not force:
        click.confirm(f"Remove {len(names)} volume(s)?", abort=True)
    for name in names:
        driver.remove_volume(name)
        click.echo(f"Removed {name}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
