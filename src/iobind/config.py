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
Runtime configuration for iobind.

Settings carry every host path the engine touches so that tests and
alternate roots (containers, chroots) can point the engine elsewhere.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, FrozenSet

from .models import ModuleRequirement


PASSTHROUGH_DRIVERS = frozenset({"vfio-pci", "uio_pci_generic", "igb_uio"})

# Driver -> modules that must be loaded before the driver can bind a device
DRIVER_MODULES = {
    "vfio-pci": ["vfio", "vfio-pci"],
    "uio_pci_generic": ["uio", "uio_pci_generic"],
    "igb_uio": ["uio", "igb_uio"],
}


def default_lock_file() -> Path:
    """Lock file under /var/run, or /tmp where /var/run is not writable."""
    lock_dir = Path("/var/run")
    if not lock_dir.exists() or not os.access(lock_dir, os.W_OK):
        lock_dir = Path("/tmp")
    return lock_dir / "iobind.lock"


@dataclass
class Settings:
    """
    Host paths and provisioning defaults.

    Attributes:
        sysfs_root: Root of the sysfs mount
        mounts_file: procfs file listing mounted filesystems
        state_dir: Directory holding the device registry
        lock_file: Advisory lock serializing runs
        reserved_leading: Number of leading matched devices reserved for
                          host management
        hugepage_mount: Default hugetlbfs mount point
        page_size_kb: Default huge page size
        numa_node: Default NUMA node for reservations
        passthrough_drivers: Drivers that hand devices to user space
    """
    sysfs_root: Path = Path("/sys")
    mounts_file: Path = Path("/proc/mounts")
    state_dir: Path = Path("/var/lib/iobind")
    lock_file: Path = field(default_factory=default_lock_file)
    reserved_leading: int = 1
    hugepage_mount: str = "/dev/hugepages"
    page_size_kb: int = 2048
    numa_node: Optional[int] = 0
    passthrough_drivers: FrozenSet[str] = PASSTHROUGH_DRIVERS

    @property
    def registry_file(self) -> Path:
        return Path(self.state_dir) / "registry.json"

    def is_passthrough(self, driver: Optional[str]) -> bool:
        return driver in self.passthrough_drivers


def passthrough_modules(driver: str, unsafe_noiommu: bool = False) -> List[ModuleRequirement]:
    """
    Derive the modules a passthrough driver needs, in load order.

    Args:
        driver: Target passthrough driver
        unsafe_noiommu: Enable vfio's no-IOMMU mode, required on hosts
                        without IOMMU support

    Returns:
        List of module requirements, dependencies first
    """
    requirements = []
    for name in DRIVER_MODULES.get(driver, [driver]):
        params = ()
        if name == "vfio" and unsafe_noiommu:
            params = (("enable_unsafe_noiommu_mode", "1"),)
        requirements.append(ModuleRequirement(name=name, parameters=params))
    return requirements


def parse_module_option(value: str) -> ModuleRequirement:
    """
    Parse a ``NAME[:key=value,...]`` module option.

    Raises:
        ValueError: If a parameter is not of the form key=value
    """
    name, _, params_str = value.partition(":")
    params = []
    if params_str:
        for item in params_str.split(","):
            key, sep, val = item.partition("=")
            if not sep or not key:
                raise ValueError(f"Invalid module parameter '{item}' in '{value}'")
            params.append((key.strip(), val.strip()))
    return ModuleRequirement(name=name.strip(), parameters=tuple(params))
