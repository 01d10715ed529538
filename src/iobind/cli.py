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
Command-line interface for iobind.
"""

from pathlib import Path

import click

from .config import Settings, default_lock_file
from .setup.main import setup
from .teardown.main import teardown
from .status.main import status
from .utils import configure_logging


@click.group(context_settings={"auto_envvar_prefix": "IOBIND"})
@click.version_option(version="0.1.0", prog_name="iobind")
@click.option("--debug", is_flag=True, help="Enable debug mode")
@click.option("--sysfs-root", type=click.Path(file_okay=False), default="/sys",
              show_default=True, help="Root of the sysfs tree")
@click.option("--state-dir", type=click.Path(file_okay=False), default="/var/lib/iobind",
              show_default=True, help="Directory holding the device registry")
@click.option("--lock-file", type=click.Path(dir_okay=False), default=None,
              help="Run lock file [default: /var/run/iobind.lock]")
@click.option("--reserved-leading", type=click.IntRange(min=0), default=1, show_default=True,
              help="Number of leading matched devices reserved for host management")
@click.pass_context
def main(ctx, debug, sysfs_root, state_dir, lock_file, reserved_leading):
    """iobind: host preparation for kernel-bypass network I/O."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings(
        sysfs_root=Path(sysfs_root),
        state_dir=Path(state_dir),
        lock_file=Path(lock_file) if lock_file else default_lock_file(),
        reserved_leading=reserved_leading,
    )
    configure_logging(debug)


main.add_command(setup)
main.add_command(teardown)
main.add_command(status)


if __name__ == "__main__":
    main()
