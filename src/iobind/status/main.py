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
Show provisioning status.

Lists candidate and reserved devices with their bound and recorded original
drivers, and the reservation count of the huge-page pools iobind manages.
"""

import sys
from typing import Optional
import click

from ..models import DeviceFilter
from ..orchestrator import ProvisioningOrchestrator
from ..exceptions import IobindError
from ..utils import EXIT_FAILED, get_settings


def format_device(device, tracked) -> str:
    driver = device.current_driver or "(none)"
    line = f"  {device.address}  {driver:<16}"
    if device.address in tracked:
        line += f" original: {tracked[device.address] or '(none)'}"
    if device.description:
        line += f"  {device.description}"
    return line


@click.command(name='status')
@click.option('--class', 'device_class', default='0200', show_default=True,
              help='PCI class code of candidate devices')
@click.option('--vendor', help='PCI vendor id of candidate devices')
@click.option('--page-size', type=int, help='Huge page size in kB to report [default: 2048]')
@click.option('--node', type=click.IntRange(min=0), help='NUMA node to report [default: 0]')
@click.pass_context
def status(ctx: click.Context, device_class: str, vendor: Optional[str],
           page_size: Optional[int], node: Optional[int]):
    """
    Show devices, drivers and huge-page reservations.

    Examples:

        iobind status
        iobind status --page-size=1048576
    """
    device_filter = DeviceFilter(
        device_class=device_class,
        vendor_id=vendor.lower() if vendor else None,
    )
    try:
        orchestrator = ProvisioningOrchestrator(get_settings(ctx))
        info = orchestrator.status(device_filter, page_size_kb=page_size, node=node)
    except IobindError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FAILED)

    tracked = info["tracked"]

    click.echo("Reserved for host management:")
    if not info["reserved"]:
        click.echo("  (none)")
    for device in info["reserved"]:
        click.echo(format_device(device, tracked))

    click.echo("\nCandidate devices:")
    if not info["candidates"]:
        click.echo("  (none)")
    for device in info["candidates"]:
        click.echo(format_device(device, tracked))

    click.echo("\nHuge pages:")
    for pool, count in info["hugepages"].items():
        size, _, pool_node = pool.partition(":")
        where = f"node{pool_node}" if pool_node else "system"
        shown = "unavailable" if count is None else str(count)
        click.echo(f"  {size}kB@{where}: {shown}")
