# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for kiln.
"""
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import click

from ..BUILDERS.fingerprint import compute_fingerprint
from ..errors import KilnError, NotFoundError
from ..MANAGERS.engine import Engine
from ..MODELS.settings import Settings
from ..MODELS.spec_model import ProjectSpec
from ..PARSERS.spec_parser import SpecParser, find_project_file
from ..REGISTRY.image_cache import ImageCache
from ..RUNNERS.symlinks import update_symlinks
from ..UTILS.logging import setup_logging

PROG_NAMES = ("kiln", "__main__.py")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _exit_code_for(error: KilnError) -> int:
    return 2 if isinstance(error, NotFoundError) else 1


@contextmanager
def _reporting_errors() -> Iterator[None]:
    """Turn kiln errors into a message on stderr and a non-zero exit."""
    try:
        yield
    except KilnError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(_exit_code_for(e))


def _load_project(file: Optional[str], log_level: Optional[str] = None) -> Tuple[ProjectSpec, Settings]:
    path = Path(file) if file else find_project_file()
    if not path.is_file():
        raise NotFoundError(str(path), kind="project file")
    settings = Settings.load(project_dir=str(path.parent), log_level=log_level)
    setup_logging(settings.log_level)
    return SpecParser().parse(path), settings


@contextmanager
def _engine(ctx: click.Context) -> Iterator[Engine]:
    spec, settings = _load_project(ctx.obj.get('file'), ctx.obj.get('log_level'))
    with Engine(spec, settings) as engine:
        yield engine


@click.group()
@click.option('--file', '-f', default=None,
              help='Project file path (default: kiln.yaml in this or a parent directory)')
@click.option('--log-level', default=None, type=click.Choice(LOG_LEVELS, case_sensitive=False),
              help='Logging verbosity')
@click.pass_context
def cli(ctx, file, log_level):
    """
    kiln - reproducible container build environments.

    Runs project commands inside containers that are built on demand from
    their setup steps and cached by content fingerprint.
    """
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['log_level'] = log_level


@cli.command(context_settings={"ignore_unknown_options": True,
                               "allow_interspersed_args": False})
@click.argument('name')
@click.argument('args', nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def run(ctx, name, args):
    """Run a command (or symlink alias), building its container if needed."""
    with _reporting_errors(), _engine(ctx) as engine:
        exit_code = engine.dispatcher.invoke(name, list(args))
    ctx.exit(exit_code)


@cli.command(name='list')
@click.pass_context
def list_commands(ctx):
    """List commands and their descriptions."""
    with _reporting_errors():
        spec, _ = _load_project(ctx.obj.get('file'), ctx.obj.get('log_level'))
    for name, command in sorted(spec.commands.items()):
        alias = f" [symlink: {command.symlink_name}]" if command.symlink_name else ""
        click.echo(f"{name:15} {command.description}{alias}")


@cli.command()
@click.argument('container')
@click.option('--force', is_flag=True, help='Rebuild even if the image is up to date')
@click.pass_context
def build(ctx, container, force):
    """Build a container image without running anything."""
    with _reporting_errors(), _engine(ctx) as engine:
        image = engine.planner.ensure_image(engine.spec.get_container(container), force=force)
    click.echo(image.path)


@cli.command()
@click.argument('container')
@click.pass_context
def fingerprint(ctx, container):
    """Print the fingerprint of a container definition."""
    with _reporting_errors():
        spec, _ = _load_project(ctx.obj.get('file'), ctx.obj.get('log_level'))
        click.echo(compute_fingerprint(spec.get_container(container)))


@cli.command()
@click.pass_context
def images(ctx):
    """List committed images."""
    with _reporting_errors(), _engine(ctx) as engine:
        current = set(engine.fingerprints().values())
        click.echo(f"{'CONTAINER':15} {'FINGERPRINT':14} {'SIZE':>10}  STATUS")
        click.echo("-" * 50)
        for image in engine.cache.list_images():
            status = "current" if image.fingerprint in current else "unused"
            click.echo(f"{image.container:15} {image.fingerprint[:12]:14} "
                       f"{ImageCache.format_size(image.size):>10}  {status}")


@cli.command()
@click.option('--unused', is_flag=True, help='Also remove images no container maps to')
@click.pass_context
def clean(ctx, unused):
    """Reclaim abandoned build roots and, optionally, unused images."""
    with _reporting_errors(), _engine(ctx) as engine:
        removed = engine.cache.collect_garbage()
        click.echo(f"Reclaimed {removed} abandoned build directories.")
        if unused:
            stats = engine.cache.prune(engine.fingerprints().values())
            click.echo(f"Removed {stats['removed_images']} unused images "
                       f"({ImageCache.format_size(stats['freed_bytes'])}).")


@cli.command()
@click.option('--dir', 'directory', default=None, help='Where to create the links')
@click.pass_context
def symlinks(ctx, directory):
    """Create symlinks for commands that declare a symlink-name."""
    with _reporting_errors():
        spec, settings = _load_project(ctx.obj.get('file'), ctx.obj.get('log_level'))
        created = update_symlinks(spec, Path(directory or settings.symlink_dir).expanduser())
    for alias, link in created.items():
        click.echo(f"{alias} -> {link}")


def invoke_alias(name: str, args: Sequence[str]) -> int:
    """
    Entry for invocations through a symlink: ``name`` is the link's name.
    """
    try:
        spec, settings = _load_project(None)
        with Engine(spec, settings) as engine:
            return engine.dispatcher.invoke(name, list(args))
    except KilnError as e:
        click.echo(f"Error: {e}", err=True)
        return _exit_code_for(e)


def main(argv: Optional[List[str]] = None):
    """
    Main entry point for the CLI.

    When started through a symlink named after a command alias, the
    invocation is dispatched to that command directly.
    """
    argv = list(sys.argv if argv is None else argv)
    prog = os.path.basename(argv[0]) if argv else "kiln"
    if prog not in PROG_NAMES:
        sys.exit(invoke_alias(prog, argv[1:]))
    cli(args=argv[1:], prog_name="kiln", obj={})


if __name__ == '__main__':
    main()
