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
Device catalog.

Enumerates candidate network devices, applies the management interface
safety policy, and keeps each device's driver history.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .models import DeviceFilter, PciDevice
from .registry import DeviceRegistry
from .store import ResourceStore
from .exceptions import DeviceNotFound, ProtectedDeviceRejected

logger = logging.getLogger(__name__)


class ManagementInterfacePolicy:
    """
    Reserves the leading matched devices for host management.

    On typical hosts the first NIC found is the interface operators and CI
    reach the machine through; rebinding it would cut the host off. The
    first ``reserved_leading`` devices of every filtered enumeration are
    therefore never offered as provisioning targets.
    """

    def __init__(self, reserved_leading: int = 1):
        if reserved_leading < 0:
            raise ValueError("reserved_leading must not be negative")
        self.reserved_leading = reserved_leading

    def split(self, devices: List[PciDevice]) -> Tuple[List[PciDevice], List[PciDevice]]:
        """Return (reserved, candidates) preserving discovery order."""
        return devices[:self.reserved_leading], devices[self.reserved_leading:]


class DeviceCatalog:
    """
    Owns the PciDevice records of the host.

    The catalog is the only writer of ``current_driver`` and
    ``original_driver``; original drivers are persisted in the registry so
    that a later teardown process can restore them.
    """

    def __init__(
        self,
        store: ResourceStore,
        registry: DeviceRegistry,
        policy: Optional[ManagementInterfacePolicy] = None,
    ):
        self.store = store
        self.registry = registry
        self.policy = policy or ManagementInterfacePolicy()
        self._devices: Dict[str, PciDevice] = {}

    def _enumerate(self, device_filter: DeviceFilter) -> List[PciDevice]:
        matched = []
        for device in self.store.list_devices():
            if not device_filter.matches(device):
                continue
            known = self._devices.get(device.address)
            if known is not None:
                known.current_driver = device.current_driver
                device = known
            else:
                device.record_original(self.registry.original_driver(device.address))
                self._devices[device.address] = device
            matched.append(device)
        return matched

    def discover(self, device_filter: DeviceFilter) -> List[PciDevice]:
        """
        Enumerate candidate devices matching the filter, in discovery order.

        Reserved management devices are excluded; explicit addresses in the
        filter are not applied here (see select()).
        """
        reserved, candidates = self.policy.split(self._enumerate(device_filter))
        for device in reserved:
            logger.debug("Device %s reserved for host management", device.address)
        return candidates

    def reserved(self, device_filter: DeviceFilter) -> List[PciDevice]:
        """Return the devices the safety policy protects for this filter."""
        reserved, _ = self.policy.split(self._enumerate(device_filter))
        return reserved

    def select(self, device_filter: DeviceFilter) -> List[PciDevice]:
        """
        Resolve the provisioning targets of a filter.

        With explicit addresses, every address must be a discovered
        candidate; otherwise all candidates are selected.

        Raises:
            DeviceNotFound: If an address matches no device
            ProtectedDeviceRejected: If an address is a reserved device
        """
        matched = self._enumerate(device_filter)
        reserved, candidates = self.policy.split(matched)
        if not device_filter.addresses:
            return candidates

        reserved_addrs = {d.address for d in reserved}
        by_address = {d.address: d for d in candidates}
        selected = []
        for address in sorted(device_filter.addresses):
            if address in reserved_addrs:
                raise ProtectedDeviceRejected(
                    f"Device {address} is reserved for host management "
                    f"(first {self.policy.reserved_leading} matched device(s))",
                    entity=address,
                )
            if address not in by_address:
                raise DeviceNotFound(
                    f"No device {address} matching class {device_filter.device_class}",
                    entity=address,
                )
            selected.append(by_address[address])
        order = [d.address for d in candidates]
        selected.sort(key=lambda d: order.index(d.address))
        return selected

    def get(self, address: str) -> PciDevice:
        """
        Return the record of a device, creating a bare one if needed.

        Teardown may address a device that has not been enumerated in this
        process; its original driver then comes from the registry.
        """
        device = self._devices.get(address)
        if device is None:
            device = PciDevice(address=address, device_class="")
            device.record_original(self.registry.original_driver(address))
            self._devices[address] = device
        return device

    def history(self, address: str) -> Optional[str]:
        """Return the recorded original driver of a device."""
        device = self._devices.get(address)
        if device is not None and device.original_driver:
            return device.original_driver
        return self.registry.original_driver(address)

    def is_tracked(self, address: str) -> bool:
        return self.registry.has_device(address)

    def tracked_addresses(self) -> List[str]:
        return sorted(self.registry.devices())

    def update_current(self, address: str, driver: Optional[str]) -> None:
        self.get(address).current_driver = driver

    def record_original(self, address: str, driver: Optional[str]) -> bool:
        """
        Record a device's original driver once; later calls are ignored.

        Returns:
            True if this call created the device's record

        Raises:
            KernelInterfaceError: If the registry cannot be written; the
                in-memory record is left unchanged
        """
        device = self.get(address)
        created = self.registry.record_device(address, device.original_driver or driver)
        device.record_original(driver)
        return created

    def forget(self, address: str) -> None:
        """Discard a device's driver history after it has been restored."""
        self.registry.forget_device(address)
        self._devices.pop(address, None)
