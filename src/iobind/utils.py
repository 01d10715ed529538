# Copyright 2025 Multikernel Technologies, Inc.
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
Shared helpers for the iobind subcommands.
"""

import logging
from typing import Iterable, Optional, Tuple

import click

from .config import Settings
from .models import RunResult, normalize_address


EXIT_COMMITTED = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_ROLLED_BACK = 3
EXIT_PARTIAL_TEARDOWN = 4
EXIT_CONCURRENT = 5


def configure_logging(debug: bool, verbose: bool = False) -> None:
    """
    Route iobind's log records to stderr.

    Args:
        debug: Log everything down to DEBUG
        verbose: Log applied changes (INFO)
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(format="%(levelname)s: %(name)s: %(message)s")
    logging.getLogger("iobind").setLevel(level)


def get_settings(ctx: Optional[click.Context]) -> Settings:
    """Return the Settings built by the command group, or defaults."""
    if ctx and ctx.obj and "settings" in ctx.obj:
        return ctx.obj["settings"]
    return Settings()


def is_debug(ctx: Optional[click.Context]) -> bool:
    return ctx.obj.get("debug", False) if ctx and ctx.obj else False


def parse_addresses(ctx, param, value: Iterable[str]) -> Tuple[str, ...]:
    """click callback normalizing PCI bus addresses."""
    addresses = []
    for item in value or ():
        try:
            addresses.append(normalize_address(item))
        except ValueError as e:
            raise click.BadParameter(str(e), ctx=ctx, param=param)
    return tuple(addresses)


def echo_journal(result: RunResult) -> None:
    """Print the journal entries of a run."""
    if not result.journal:
        click.echo("  Journal: (empty)")
        return
    click.echo("  Journal:")
    for entry in result.journal:
        click.echo(f"    {entry}")
