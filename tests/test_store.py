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
Tests for the sysfs-backed resource store.
"""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from iobind.exceptions import DeviceNotFound, KernelInterfaceError
from iobind.store import SysfsResourceStore, parse_lspci


LSPCI_OUTPUT = """\
Slot:\t0000:02:01.0
Class:\tEthernet controller [0200]
Vendor:\tIntel Corporation [8086]
Device:\t82545EM Gigabit Ethernet Controller (Copper) [100f]
SVendor:\tVMware [15ad]
SDevice:\tPRO/1000 MT Single Port Adapter [0750]
Rev:\t01
Driver:\te1000
Module:\te1000

Slot:\t0000:02:02.0
Class:\tEthernet controller [0200]
Vendor:\tIntel Corporation [8086]
Device:\t82545EM Gigabit Ethernet Controller (Copper) [100f]
Module:\te1000
"""


def make_driver(sysfs: Path, name: str) -> Path:
    drv = sysfs / "bus" / "pci" / "drivers" / name
    drv.mkdir(parents=True, exist_ok=True)
    (drv / "bind").write_text("")
    (drv / "unbind").write_text("")
    return drv


def make_device(sysfs: Path, address: str, driver=None, pci_class="0x020000") -> Path:
    dev = sysfs / "bus" / "pci" / "devices" / address
    dev.mkdir(parents=True)
    (dev / "class").write_text(pci_class + "\n")
    (dev / "vendor").write_text("0x8086\n")
    (dev / "device").write_text("0x100f\n")
    (dev / "driver_override").write_text("(null)\n")
    if driver:
        (dev / "driver").symlink_to(make_driver(sysfs, driver))
    return dev


@pytest.fixture
def sysfs(tmp_path):
    root = tmp_path / "sys"
    root.mkdir()
    return root


@pytest.fixture
def store(sysfs, tmp_path):
    return SysfsResourceStore(sysfs_root=str(sysfs), mounts_file=str(tmp_path / "mounts"))


class TestHugepages:
    """Test huge-page pool and mount access."""

    def test_node_pool_read_write(self, store, sysfs):
        """Test reading and writing a per-node pool."""
        pool = sysfs / "devices/system/node/node0/hugepages/hugepages-2048kB"
        pool.mkdir(parents=True)
        (pool / "nr_hugepages").write_text("0\n")

        store.write_hugepages(2048, 0, 32)

        assert (pool / "nr_hugepages").read_text() == "32"
        assert store.read_hugepages(2048, 0) == 32

    def test_system_pool_path(self, store, sysfs):
        """Test that node None addresses the system-wide pool."""
        assert store.hugepages_path(1048576, None) == (
            sysfs / "kernel/mm/hugepages/hugepages-1048576kB/nr_hugepages"
        )

    def test_missing_pool(self, store):
        """Test reading an unsupported page size."""
        with pytest.raises(KernelInterfaceError, match="Huge-page pool not found"):
            store.read_hugepages(4096, 0)

    def test_is_hugetlbfs_mounted(self, store, tmp_path):
        """Test mount table parsing."""
        (tmp_path / "mounts").write_text(
            "proc /proc proc rw 0 0\n"
            "hugetlbfs /dev/hugepages hugetlbfs rw,relatime,pagesize=2M 0 0\n"
            "tmpfs /mnt/huge tmpfs rw 0 0\n"
        )

        assert store.is_hugetlbfs_mounted("/dev/hugepages")
        assert not store.is_hugetlbfs_mounted("/mnt/huge")

    def test_mount_hugetlbfs(self, store, tmp_path):
        """Test mount point creation and the mount command."""
        mount_point = tmp_path / "hugepages"

        with patch("iobind.store.subprocess.run") as mock_run:
            store.mount_hugetlbfs(str(mount_point))

        assert mount_point.is_dir()
        mock_run.assert_called_once_with(
            ["mount", "-t", "hugetlbfs", "nodev", str(mount_point)],
            check=True, capture_output=True, text=True,
        )


class TestModules:
    """Test module table access."""

    def test_read_unloaded_module(self, store):
        """Test a module absent from /sys/module."""
        state = store.read_module("vfio")
        assert not state.loaded
        assert state.parameters == {}

    def test_read_module_parameters(self, store, sysfs):
        """Test reading parameters of a loaded module."""
        params = sysfs / "module" / "vfio" / "parameters"
        params.mkdir(parents=True)
        (params / "enable_unsafe_noiommu_mode").write_text("Y\n")

        state = store.read_module("vfio")

        assert state.loaded
        assert state.parameters == {"enable_unsafe_noiommu_mode": "Y"}

    def test_dashed_module_name(self, store, sysfs):
        """Test that vfio-pci is found as vfio_pci."""
        (sysfs / "module" / "vfio_pci").mkdir(parents=True)
        assert store.read_module("vfio-pci").loaded

    def test_load_module_command(self, store):
        """Test modprobe invocation with parameters."""
        with patch("iobind.store.subprocess.run") as mock_run:
            store.load_module("vfio", {"enable_unsafe_noiommu_mode": "1"})

        mock_run.assert_called_once_with(
            ["modprobe", "vfio", "enable_unsafe_noiommu_mode=1"],
            check=True, capture_output=True, text=True,
        )

    def test_load_module_failure(self, store):
        """Test that modprobe failures become KernelInterfaceError."""
        error = subprocess.CalledProcessError(
            1, ["modprobe", "nope"], output="", stderr="modprobe: FATAL: Module nope not found"
        )
        with patch("iobind.store.subprocess.run", side_effect=error):
            with pytest.raises(KernelInterfaceError, match="FATAL: Module nope not found"):
                store.load_module("nope", {})


class TestDrivers:
    """Test driver binding through sysfs."""

    def test_read_driver(self, store, sysfs):
        """Test reading the bound driver from the driver symlink."""
        make_device(sysfs, "0000:02:02.0", driver="e1000")
        make_device(sysfs, "0000:02:03.0")

        assert store.read_driver("0000:02:02.0") == "e1000"
        assert store.read_driver("0000:02:03.0") is None

    def test_read_driver_missing_device(self, store):
        """Test reading a device that does not exist."""
        with pytest.raises(DeviceNotFound):
            store.read_driver("0000:09:00.0")

    def test_unbind_writes_address(self, store, sysfs):
        """Test unbind writes the address to the driver's unbind file."""
        make_device(sysfs, "0000:02:02.0", driver="e1000")

        store.unbind("0000:02:02.0", "e1000")

        assert (sysfs / "bus/pci/drivers/e1000/unbind").read_text() == "0000:02:02.0"

    def test_bind_uses_driver_override(self, store, sysfs):
        """Test that bind pins driver_override and clears it afterwards."""
        dev = make_device(sysfs, "0000:02:02.0")
        drv = make_driver(sysfs, "vfio-pci")

        with patch.object(store, "_write", wraps=store._write) as spy:  # pylint: disable=protected-access
            store.bind("0000:02:02.0", "vfio-pci")

        written = [(c.args[0].name, c.args[1]) for c in spy.call_args_list]
        assert written == [
            ("driver_override", "vfio-pci"),
            ("bind", "0000:02:02.0"),
            ("driver_override", "\n"),
        ]
        assert (drv / "bind").read_text() == "0000:02:02.0"
        assert (dev / "driver_override").read_text() == "\n"

    def test_bind_without_driver_interface(self, store, sysfs):
        """Test binding to a driver whose module is not loaded."""
        make_device(sysfs, "0000:02:02.0")

        with pytest.raises(KernelInterfaceError, match="Is the vfio-pci module loaded"):
            store.bind("0000:02:02.0", "vfio-pci")


class TestDeviceListing:
    """Test PCI enumeration."""

    def test_parse_lspci(self):
        """Test parsing machine-readable lspci output."""
        devices = parse_lspci(LSPCI_OUTPUT)

        assert [d.address for d in devices] == ["0000:02:01.0", "0000:02:02.0"]
        assert devices[0].device_class == "0200"
        assert devices[0].vendor_id == "8086"
        assert devices[0].device_id == "100f"
        assert devices[0].current_driver == "e1000"
        assert devices[0].description == "82545EM Gigabit Ethernet Controller (Copper)"
        assert devices[1].current_driver is None

    def test_list_devices_uses_lspci(self, store):
        """Test that lspci output is parsed when available."""
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout=LSPCI_OUTPUT)
        with patch("iobind.store.subprocess.run", return_value=completed) as mock_run:
            devices = store.list_devices()

        assert mock_run.call_args.args[0] == ["lspci", "-Dvmmnnk"]
        assert len(devices) == 2

    def test_list_devices_sysfs_fallback(self, store, sysfs):
        """Test sysfs enumeration when lspci is not installed."""
        make_device(sysfs, "0000:02:02.0", driver="e1000")
        make_device(sysfs, "0000:00:1f.2", driver="ahci", pci_class="0x010601")

        with patch("iobind.store.subprocess.run", side_effect=FileNotFoundError("lspci")):
            devices = store.list_devices()

        assert [(d.address, d.device_class, d.current_driver) for d in devices] == [
            ("0000:00:1f.2", "0106", "ahci"),
            ("0000:02:02.0", "0200", "e1000"),
        ]
        assert devices[1].vendor_id == "8086"
