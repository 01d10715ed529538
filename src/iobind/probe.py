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
Read-only view of the host state relevant to provisioning.
"""

import logging
from typing import Iterable, Optional

from .models import HostState, HugepageSpec, ModuleRequirement
from .store import ResourceStore
from .exceptions import IobindError, DeviceNotFound

logger = logging.getLogger(__name__)


class ResourceProbe:
    """
    Reads host state through a ResourceStore without side effects.

    A failed read never fails the probe: the affected key is recorded in
    HostState.unknown and its value is left as None.
    """

    def __init__(self, store: ResourceStore):
        self.store = store

    def probe(
        self,
        modules: Iterable[ModuleRequirement] = (),
        hugepages: Optional[HugepageSpec] = None,
        devices: Iterable[str] = (),
    ) -> HostState:
        """
        Read the state of the given modules, huge-page pool and devices.

        Args:
            modules: Modules whose load status and parameters to read
            hugepages: Pool and mount point to read
            devices: Bus addresses whose bound driver to read

        Returns:
            HostState, possibly partial
        """
        state = HostState()

        for req in modules:
            key = f"module:{req.name}"
            try:
                state.modules[req.name] = self.store.read_module(req.name)
            except (IobindError, OSError) as e:
                logger.debug("Cannot read %s: %s", key, e)
                state.modules[req.name] = None
                state.unknown.add(key)

        if hugepages is not None:
            mount_key = f"mount:{hugepages.mount_path}"
            try:
                state.mounts[hugepages.mount_path] = self.store.is_hugetlbfs_mounted(
                    hugepages.mount_path
                )
            except (IobindError, OSError) as e:
                logger.debug("Cannot read %s: %s", mount_key, e)
                state.mounts[hugepages.mount_path] = None
                state.unknown.add(mount_key)

            pool_key = f"hugepages:{hugepages.pool_key}"
            try:
                state.hugepages[hugepages.pool_key] = self.store.read_hugepages(
                    hugepages.page_size_kb, hugepages.node
                )
            except (IobindError, OSError) as e:
                logger.debug("Cannot read %s: %s", pool_key, e)
                state.hugepages[hugepages.pool_key] = None
                state.unknown.add(pool_key)

        for address in devices:
            key = f"device:{address}"
            try:
                state.drivers[address] = self.store.read_driver(address)
            except (IobindError, OSError) as e:
                logger.debug("Cannot read %s: %s", key, e)
                state.drivers[address] = None
                state.unknown.add(key)

        return state

    def driver_of(self, address: str) -> Optional[str]:
        """
        Read the driver currently bound to a device.

        Raises:
            DeviceNotFound: If the device's driver binding cannot be read
        """
        state = self.probe(devices=[address])
        if not state.is_known(f"device:{address}"):
            raise DeviceNotFound(
                f"Cannot read driver binding of PCI device {address}", entity=address
            )
        return state.drivers[address]
