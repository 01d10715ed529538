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
Host resource store.

The engine never touches sysfs, procfs or system commands directly; it goes
through a ResourceStore. Every operation is a fallible key-value read or
write with no implied transactionality.

SysfsResourceStore is the production implementation:

- huge pages:  <sysfs>/devices/system/node/node<N>/hugepages/hugepages-<S>kB/nr_hugepages
               <sysfs>/kernel/mm/hugepages/hugepages-<S>kB/nr_hugepages (no node)
- modules:     <sysfs>/module/<name>/parameters/<param>, modprobe
- drivers:     <sysfs>/bus/pci/devices/<addr>/driver (symlink)
               <sysfs>/bus/pci/devices/<addr>/driver_override
               <sysfs>/bus/pci/drivers/<driver>/{bind,unbind}
- devices:     lspci -Dvmmnnk, or <sysfs>/bus/pci/devices when lspci is absent
- mounts:      /proc/mounts, mount, umount
"""

import re
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .models import HostModuleState, PciDevice, normalize_address
from .exceptions import KernelInterfaceError, DeviceNotFound


class ResourceStore(ABC):
    """Capability interface over host-global provisioning state."""

    @abstractmethod
    def is_hugetlbfs_mounted(self, path: str) -> bool:
        """Return True if a hugetlbfs is mounted at path."""

    @abstractmethod
    def mount_hugetlbfs(self, path: str) -> None:
        """Mount a hugetlbfs at path, creating the directory if needed."""

    @abstractmethod
    def unmount(self, path: str) -> None:
        """Unmount the filesystem at path."""

    @abstractmethod
    def read_hugepages(self, page_size_kb: int, node: Optional[int]) -> int:
        """Return the reservation count of a huge-page pool."""

    @abstractmethod
    def write_hugepages(self, page_size_kb: int, node: Optional[int], count: int) -> None:
        """Request a reservation count for a huge-page pool."""

    @abstractmethod
    def read_module(self, name: str) -> HostModuleState:
        """Return the module table entry for a module."""

    @abstractmethod
    def load_module(self, name: str, params: Dict[str, str]) -> None:
        """Load a module with parameters."""

    @abstractmethod
    def unload_module(self, name: str) -> None:
        """Unload a module."""

    @abstractmethod
    def read_driver(self, address: str) -> Optional[str]:
        """Return the driver bound to a device, or None if unbound."""

    @abstractmethod
    def unbind(self, address: str, driver: str) -> None:
        """Release a device from its driver."""

    @abstractmethod
    def bind(self, address: str, driver: str) -> None:
        """Bind an unbound device to a driver."""

    @abstractmethod
    def list_devices(self) -> List[PciDevice]:
        """Enumerate PCI devices in bus order."""


def module_sysfs_name(name: str) -> str:
    """Module names appear in /sys/module with dashes turned into underscores."""
    return name.replace("-", "_")


def parse_lspci(output: str) -> List[PciDevice]:
    """
    Parse machine-readable ``lspci -Dvmmnnk`` output.

    Records are separated by blank lines; numeric ids are the bracketed
    suffix of each field, e.g. ``Class:\\tEthernet controller [0200]``.
    """
    devices = []
    for block in re.split(r'\n\s*\n', output.strip()):
        fields = {}
        for line in block.splitlines():
            key, sep, value = line.partition(":")
            if sep:
                fields[key.strip()] = value.strip()
        if "Slot" not in fields:
            continue

        def _split(value: Optional[str]):
            if not value:
                return None, None
            match = re.match(r'^(.*?)\s*\[([0-9a-fA-F]{4})\]$', value)
            if not match:
                return value, None
            return match.group(1), match.group(2).lower()

        _, class_code = _split(fields.get("Class"))
        _, vendor_id = _split(fields.get("Vendor"))
        desc, device_id = _split(fields.get("Device"))
        devices.append(PciDevice(
            address=normalize_address(fields["Slot"]),
            device_class=class_code or "",
            vendor_id=vendor_id,
            device_id=device_id,
            description=desc,
            current_driver=fields.get("Driver"),
        ))
    return devices


class SysfsResourceStore(ResourceStore):
    """
    ResourceStore backed by the kernel sysfs/procfs interfaces.

    Attributes:
        sysfs_root: Root of the sysfs tree (normally /sys)
        mounts_file: Mount table (normally /proc/mounts)
    """

    DEFAULT_SYSFS_ROOT = "/sys"
    DEFAULT_MOUNTS_FILE = "/proc/mounts"

    def __init__(self, sysfs_root: Optional[str] = None, mounts_file: Optional[str] = None):
        self.sysfs_root = Path(sysfs_root or self.DEFAULT_SYSFS_ROOT)
        self.mounts_file = Path(mounts_file or self.DEFAULT_MOUNTS_FILE)

    def _run(self, cmd: List[str]) -> str:
        try:
            result = subprocess.run(cmd, check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise KernelInterfaceError(f"Command not found: {cmd[0]}") from e
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or e.stdout or "").strip()
            raise KernelInterfaceError(
                f"'{' '.join(cmd)}' failed with status {e.returncode}"
                + (f": {detail}" if detail else "")
            ) from e
        return result.stdout

    def _read(self, path: Path) -> str:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read().strip()
        except OSError as e:
            raise KernelInterfaceError(f"Failed to read {path}: {e}") from e

    def _write(self, path: Path, value: str) -> None:
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(value)
        except OSError as e:
            raise KernelInterfaceError(f"Failed to write '{value.strip()}' to {path}: {e}") from e

    # Huge pages

    def is_hugetlbfs_mounted(self, path: str) -> bool:
        target = str(Path(path))
        for line in self._read(self.mounts_file).splitlines():
            parts = line.split()
            if len(parts) >= 3 and parts[1] == target and parts[2] == "hugetlbfs":
                return True
        return False

    def mount_hugetlbfs(self, path: str) -> None:
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise KernelInterfaceError(f"Failed to create mount point {path}: {e}") from e
        self._run(["mount", "-t", "hugetlbfs", "nodev", str(path)])

    def unmount(self, path: str) -> None:
        self._run(["umount", str(path)])

    def hugepages_path(self, page_size_kb: int, node: Optional[int]) -> Path:
        pool = f"hugepages-{page_size_kb}kB"
        if node is None:
            return self.sysfs_root / "kernel" / "mm" / "hugepages" / pool / "nr_hugepages"
        return (self.sysfs_root / "devices" / "system" / "node" / f"node{node}"
                / "hugepages" / pool / "nr_hugepages")

    def read_hugepages(self, page_size_kb: int, node: Optional[int]) -> int:
        path = self.hugepages_path(page_size_kb, node)
        if not path.exists():
            raise KernelInterfaceError(
                f"Huge-page pool not found: {path}. "
                f"Is {page_size_kb}kB a supported page size?"
            )
        try:
            return int(self._read(path))
        except ValueError as e:
            raise KernelInterfaceError(f"Unexpected content in {path}: {e}") from e

    def write_hugepages(self, page_size_kb: int, node: Optional[int], count: int) -> None:
        self._write(self.hugepages_path(page_size_kb, node), str(count))

    # Modules

    def read_module(self, name: str) -> HostModuleState:
        module_dir = self.sysfs_root / "module" / module_sysfs_name(name)
        if not module_dir.is_dir():
            return HostModuleState(name=name, loaded=False)

        params = {}
        params_dir = module_dir / "parameters"
        if params_dir.is_dir():
            for param in sorted(params_dir.iterdir()):
                try:
                    params[param.name] = self._read(param)
                except KernelInterfaceError:
                    # Some parameters are write-only for root
                    continue
        return HostModuleState(name=name, loaded=True, parameters=params)

    def load_module(self, name: str, params: Dict[str, str]) -> None:
        cmd = ["modprobe", name]
        cmd.extend(f"{key}={value}" for key, value in params.items())
        self._run(cmd)

    def unload_module(self, name: str) -> None:
        self._run(["modprobe", "-r", name])

    # Drivers

    def _device_dir(self, address: str) -> Path:
        device_dir = self.sysfs_root / "bus" / "pci" / "devices" / address
        if not device_dir.exists():
            raise DeviceNotFound(f"PCI device {address} not found", entity=address)
        return device_dir

    def read_driver(self, address: str) -> Optional[str]:
        driver_link = self._device_dir(address) / "driver"
        if not driver_link.exists():
            return None
        try:
            return driver_link.resolve().name
        except OSError as e:
            raise KernelInterfaceError(f"Failed to resolve {driver_link}: {e}") from e

    def unbind(self, address: str, driver: str) -> None:
        self._device_dir(address)
        self._write(self.sysfs_root / "bus" / "pci" / "drivers" / driver / "unbind", address)

    def bind(self, address: str, driver: str) -> None:
        device_dir = self._device_dir(address)
        bind_file = self.sysfs_root / "bus" / "pci" / "drivers" / driver / "bind"
        if not bind_file.exists():
            raise KernelInterfaceError(
                f"Driver interface not found: {bind_file}. Is the {driver} module loaded?"
            )

        # driver_override pins the device to exactly this driver instead of
        # adding its PCI id to the driver's new_id table
        override = device_dir / "driver_override"
        has_override = override.exists()
        if has_override:
            self._write(override, driver)
        try:
            self._write(bind_file, address)
        finally:
            if has_override:
                self._write(override, "\n")

    # Devices

    def list_devices(self) -> List[PciDevice]:
        try:
            output = self._run(["lspci", "-Dvmmnnk"])
        except KernelInterfaceError as e:
            if not isinstance(e.__cause__, FileNotFoundError):
                raise
            return self._list_sysfs_devices()
        return parse_lspci(output)

    def _list_sysfs_devices(self) -> List[PciDevice]:
        devices_dir = self.sysfs_root / "bus" / "pci" / "devices"
        if not devices_dir.is_dir():
            raise KernelInterfaceError(f"PCI device directory not found: {devices_dir}")

        devices = []
        for dev_dir in sorted(devices_dir.iterdir(), key=lambda p: p.name):
            try:
                address = normalize_address(dev_dir.name)
            except ValueError:
                continue
            # class is 0xCCSSPP: base class, subclass, programming interface
            raw_class = self._read(dev_dir / "class")
            device_class = raw_class.lower().replace("0x", "")[:4]

            def _id(name):
                path = dev_dir / name
                return self._read(path).lower().replace("0x", "") if path.exists() else None

            driver_link = dev_dir / "driver"
            devices.append(PciDevice(
                address=address,
                device_class=device_class,
                vendor_id=_id("vendor"),
                device_id=_id("device"),
                current_driver=driver_link.resolve().name if driver_link.exists() else None,
            ))
        return devices
