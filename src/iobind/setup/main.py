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
Setup command.

Loads the passthrough driver's modules, reserves huge pages and rebinds the
selected NICs to the passthrough driver. A failure part-way rolls back every
change the run made.
"""

import sys
from typing import Optional, Tuple
import click

from ..config import parse_module_option, passthrough_modules
from ..models import DeviceFilter, HugepageSpec, SetupIntent
from ..orchestrator import ProvisioningOrchestrator
from ..exceptions import ConcurrentRunRejected, IobindError
from ..utils import (
    EXIT_CONCURRENT,
    EXIT_FAILED,
    EXIT_ROLLED_BACK,
    configure_logging,
    echo_journal,
    get_settings,
    is_debug,
    parse_addresses,
)


@click.command(name='setup')
@click.option('--driver', '-d', default='vfio-pci', show_default=True,
              help='Passthrough driver to bind devices to')
@click.option('--device', 'devices', multiple=True, callback=parse_addresses,
              help='PCI bus address to bind (repeatable); default: all candidates')
@click.option('--class', 'device_class', default='0200', show_default=True,
              help='PCI class code of candidate devices')
@click.option('--vendor', help='PCI vendor id of candidate devices')
@click.option('--pages', type=click.IntRange(min=0), help='Huge pages to reserve')
@click.option('--min-pages', type=click.IntRange(min=0),
              help='Minimum acceptable grant [default: --pages]')
@click.option('--page-size', type=int, help='Huge page size in kB [default: 2048]')
@click.option('--node', type=click.IntRange(min=0), help='NUMA node of the reservation [default: 0]')
@click.option('--system-pool', is_flag=True, help='Reserve from the system-wide pool, not a node')
@click.option('--mount', 'mount_path', help='hugetlbfs mount point [default: /dev/hugepages]')
@click.option('--module', 'extra_modules', multiple=True,
              help='Extra module to load, NAME[:key=value,...] (repeatable)')
@click.option('--unsafe-noiommu', is_flag=True,
              help='Enable vfio no-IOMMU mode (hosts without IOMMU; no DMA isolation)')
@click.option('--timeout', type=float, help='Abort between steps after this many seconds')
@click.option('--dry-run', is_flag=True, help='Show the plan without applying it')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def setup(ctx: click.Context, driver: str, devices: Tuple[str, ...], device_class: str,
          vendor: Optional[str], pages: Optional[int], min_pages: Optional[int],
          page_size: Optional[int], node: Optional[int], system_pool: bool,
          mount_path: Optional[str], extra_modules: Tuple[str, ...], unsafe_noiommu: bool,
          timeout: Optional[float], dry_run: bool, verbose: bool):
    """
    Prepare the host for kernel-bypass networking.

    The first matched device is reserved for host management and is never
    rebound (see --reserved-leading).

    Examples:

        iobind setup --driver=vfio-pci --device=02:02.0 --pages=32
        iobind setup --pages=1 --page-size=1048576 --unsafe-noiommu
        iobind setup --dry-run --verbose
    """
    debug = is_debug(ctx)
    configure_logging(debug, verbose)
    settings = get_settings(ctx)

    try:
        try:
            modules = passthrough_modules(driver, unsafe_noiommu)
            modules.extend(parse_module_option(m) for m in extra_modules)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint='--module')

        hugepages = None
        if pages is not None:
            hugepages = HugepageSpec(
                page_size_kb=page_size or settings.page_size_kb,
                count=pages,
                mount_path=mount_path or settings.hugepage_mount,
                node=None if system_pool else (settings.numa_node if node is None else node),
                min_count=pages if min_pages is None else min_pages,
            )

        intent = SetupIntent(
            target_driver=driver,
            device_filter=DeviceFilter(
                device_class=device_class,
                vendor_id=vendor.lower() if vendor else None,
                addresses=frozenset(devices),
            ),
            hugepages=hugepages,
            modules=tuple(modules),
        )

        orchestrator = ProvisioningOrchestrator(settings)

        if dry_run:
            try:
                plan = orchestrator.plan(intent)
            except IobindError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(EXIT_FAILED)
            if not plan:
                click.echo("✓ Host already provisioned, nothing to do")
            else:
                click.echo(f"Plan ({len(plan)} step(s)):")
                for index, step in enumerate(plan, 1):
                    click.echo(f"  {index}. {step.description}")
            click.echo("\n✓ Nothing applied (dry-run mode)")
            click.echo("  Remove --dry-run to apply")
            return

        try:
            result = orchestrator.setup(intent, timeout=timeout)
        except ConcurrentRunRejected as e:
            click.echo(f"Error: {e}", err=True)
            click.echo("Wait for the other run to finish before retrying.", err=True)
            sys.exit(EXIT_CONCURRENT)

        if result.committed:
            if result.journal:
                click.echo(f"✓ Setup committed: {len(result.journal)} change(s) applied")
            else:
                click.echo("✓ Setup committed: host already provisioned")
            if verbose:
                echo_journal(result)
            return

        click.echo(f"Error: {result.error}", err=True)
        if not result.rolled_back:
            if result.steps_total:
                click.echo(
                    f"Setup failed at step {result.steps_applied + 1} of "
                    f"{result.steps_total}; no changes had been made",
                    err=True,
                )
            sys.exit(EXIT_FAILED)

        click.echo(
            f"Setup failed at step {result.steps_applied + 1} of {result.steps_total}",
            err=True,
        )
        if result.rollback_complete:
            click.echo("✓ All changes were rolled back", err=True)
        else:
            click.echo("Rollback could not reverse:", err=True)
            for entry, reason in result.rollback_failures:
                click.echo(f"  {entry}: {reason}", err=True)
        sys.exit(EXIT_ROLLED_BACK)

    except IobindError as e:
        click.echo(f"Error: {e}", err=True)
        if verbose or debug:
            import traceback
            traceback.print_exc()
        sys.exit(EXIT_FAILED)
