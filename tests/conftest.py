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
Pytest configuration and fixtures for iobind tests.
"""

import pytest
import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from iobind.config import Settings
from iobind.exceptions import DeviceNotFound, KernelInterfaceError
from iobind.models import HostModuleState, PciDevice
from iobind.orchestrator import ProvisioningOrchestrator
from iobind.store import ResourceStore


class FakeHost(ResourceStore):
    """
    In-memory host for exercising the engine without root.

    Failures are injected by adding tuples to ``failures``:
    ("load", module), ("unload", module), ("mount", path), ("umount", path),
    ("write_hugepages", (size, node)), ("unbind", address),
    ("bind", address, driver).
    """

    def __init__(self):
        self.mounts = set()
        self.pools = {}
        self.capacity = {}
        self.modules = {}
        self.available_modules = set()
        self.devices = []
        self.bindings = {}
        self.failures = set()
        self.calls = []

    def add_device(self, address, driver, device_class="0200", vendor_id="8086",
                   device_id="100f", description="82545EM Gigabit Ethernet Controller"):
        self.devices.append(PciDevice(
            address=address, device_class=device_class, vendor_id=vendor_id,
            device_id=device_id, description=description,
        ))
        self.bindings[address] = driver

    def snapshot(self):
        """Everything a run may change, for before/after comparisons."""
        return (
            frozenset(self.mounts),
            tuple(sorted(self.pools.items(), key=str)),
            tuple(sorted((k, tuple(sorted(v.items()))) for k, v in self.modules.items())),
            tuple(sorted(self.bindings.items(), key=str)),
        )

    def _check(self, *key):
        self.calls.append(key)
        if key in self.failures:
            raise KernelInterfaceError(f"injected failure: {key}")

    def is_hugetlbfs_mounted(self, path):
        return path in self.mounts

    def mount_hugetlbfs(self, path):
        self._check("mount", path)
        self.mounts.add(path)

    def unmount(self, path):
        self._check("umount", path)
        self.mounts.discard(path)

    def read_hugepages(self, page_size_kb, node):
        key = (page_size_kb, node)
        if key not in self.pools:
            raise KernelInterfaceError(f"no pool {key}")
        return self.pools[key]

    def write_hugepages(self, page_size_kb, node, count):
        key = (page_size_kb, node)
        self._check("write_hugepages", key)
        if key not in self.pools:
            raise KernelInterfaceError(f"no pool {key}")
        self.pools[key] = min(count, self.capacity.get(key, count))

    def read_module(self, name):
        if name in self.modules:
            return HostModuleState(name=name, loaded=True, parameters=dict(self.modules[name]))
        return HostModuleState(name=name, loaded=False)

    def load_module(self, name, params):
        self._check("load", name)
        if name not in self.available_modules:
            raise KernelInterfaceError(f"modprobe: FATAL: Module {name} not found")
        self.modules[name] = dict(params)

    def unload_module(self, name):
        self._check("unload", name)
        self.modules.pop(name, None)

    def read_driver(self, address):
        if address not in self.bindings:
            raise DeviceNotFound(f"PCI device {address} not found", entity=address)
        return self.bindings[address]

    def unbind(self, address, driver):
        self._check("unbind", address)
        if self.bindings.get(address) != driver:
            raise KernelInterfaceError(f"{address} is not bound to {driver}")
        self.bindings[address] = None

    def bind(self, address, driver):
        self._check("bind", address, driver)
        if self.bindings.get(address) is not None:
            raise KernelInterfaceError(f"{address} is busy")
        self.bindings[address] = driver

    def list_devices(self):
        return [
            PciDevice(
                address=d.address, device_class=d.device_class, vendor_id=d.vendor_id,
                device_id=d.device_id, description=d.description,
                current_driver=self.bindings[d.address],
            )
            for d in self.devices
        ]


@pytest.fixture
def host():
    """Host with a management NIC, two spare e1000 NICs and a SATA controller."""
    fake = FakeHost()
    fake.add_device("0000:00:1f.2", "ahci", device_class="0106", device_id="2922",
                    description="SATA Controller")
    fake.add_device("0000:02:01.0", "e1000")
    fake.add_device("0000:02:02.0", "e1000")
    fake.add_device("0000:02:03.0", "e1000")
    fake.available_modules = {"vfio", "vfio-pci", "e1000", "uio", "uio_pci_generic"}
    fake.modules = {"e1000": {}}
    fake.pools = {(2048, 0): 0, (1048576, 0): 0, (2048, None): 0}
    fake.capacity = {(2048, 0): 64, (1048576, 0): 1}
    return fake


@pytest.fixture
def settings(tmp_path):
    """Settings pointing all state at a temporary directory."""
    return Settings(
        sysfs_root=tmp_path / "sys",
        mounts_file=tmp_path / "mounts",
        state_dir=tmp_path / "state",
        lock_file=tmp_path / "run" / "iobind.lock",
    )


@pytest.fixture
def orchestrator(host, settings):
    """Orchestrator running against the fake host."""
    return ProvisioningOrchestrator(settings=settings, store=host)
