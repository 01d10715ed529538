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
Teardown command.

Returns provisioned devices to the drivers they were taken from. Each device
is restored independently; devices that cannot be restored are listed and
the command exits with a distinct status.
"""

import sys
from typing import Optional, Tuple
import click

from ..models import DeviceFilter, TeardownIntent
from ..orchestrator import ProvisioningOrchestrator
from ..exceptions import ConcurrentRunRejected, IobindError
from ..utils import (
    EXIT_CONCURRENT,
    EXIT_FAILED,
    EXIT_PARTIAL_TEARDOWN,
    configure_logging,
    get_settings,
    is_debug,
    parse_addresses,
)


@click.command(name='teardown')
@click.option('--device', 'devices', multiple=True, callback=parse_addresses,
              help='PCI bus address to restore (repeatable); default: all candidates')
@click.option('--class', 'device_class', default='0200', show_default=True,
              help='PCI class code of candidate devices')
@click.option('--vendor', help='PCI vendor id of candidate devices')
@click.option('--fallback-driver',
              help='Driver for passthrough-bound devices with no recorded original driver')
@click.option('--restore-hugepages', is_flag=True,
              help='Restore huge-page pools to their pre-setup counts')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def teardown(ctx: click.Context, devices: Tuple[str, ...], device_class: str,
             vendor: Optional[str], fallback_driver: Optional[str],
             restore_hugepages: bool, verbose: bool):
    """
    Return devices to their original drivers.

    Examples:

        iobind teardown
        iobind teardown --device=02:02.0
        iobind teardown --fallback-driver=e1000 --restore-hugepages
    """
    debug = is_debug(ctx)
    configure_logging(debug, verbose)

    intent = TeardownIntent(
        device_filter=DeviceFilter(
            device_class=device_class,
            vendor_id=vendor.lower() if vendor else None,
            addresses=frozenset(devices),
        ),
        fallback_driver=fallback_driver,
        restore_hugepages=restore_hugepages,
    )

    try:
        orchestrator = ProvisioningOrchestrator(get_settings(ctx))
        result = orchestrator.teardown(intent)
    except ConcurrentRunRejected as e:
        click.echo(f"Error: {e}", err=True)
        click.echo("Wait for the other run to finish before retrying.", err=True)
        sys.exit(EXIT_CONCURRENT)
    except IobindError as e:
        click.echo(f"Error: {e}", err=True)
        if verbose or debug:
            import traceback
            traceback.print_exc()
        sys.exit(EXIT_FAILED)

    if result.error is not None:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(EXIT_FAILED)

    if verbose:
        for address in result.restored:
            click.echo(f"  restored {address}")

    if result.unrestored:
        click.echo(
            f"Error: {len(result.unrestored)} device(s) remain unrestored:", err=True
        )
        for address, reason in sorted(result.unrestored.items()):
            click.echo(f"  {address}: {reason}", err=True)
        sys.exit(EXIT_PARTIAL_TEARDOWN)

    if result.restored:
        click.echo(f"✓ Teardown complete: {len(result.restored)} device(s) restored")
    else:
        click.echo("✓ Teardown complete: nothing to restore")
