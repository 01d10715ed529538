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
Driver rebinding.

Moves a PCI device from its current driver to a target driver through the
kernel unbind/bind interfaces and records the driver it came from, so that
rollback and teardown can put it back.
"""

import logging
from typing import Callable, List, Optional

from .models import ActionKind, JournalEntry
from .probe import ResourceProbe
from .catalog import DeviceCatalog
from .store import ResourceStore
from .exceptions import (
    BindFailed,
    IobindError,
    KernelInterfaceError,
    RestoreUnavailable,
    UnbindFailed,
)

logger = logging.getLogger(__name__)


class DriverRebinder:
    """
    Rebinds devices between drivers.

    Attributes:
        store: Resource store used for unbind/bind writes
        probe: Probe used to read the bound driver before and after a change
        catalog: Device catalog that records driver history
        is_passthrough: Predicate telling passthrough drivers apart from
                        native ones
    """

    def __init__(
        self,
        store: ResourceStore,
        probe: ResourceProbe,
        catalog: DeviceCatalog,
        is_passthrough: Callable[[Optional[str]], bool],
    ):
        self.store = store
        self.probe = probe
        self.catalog = catalog
        self.is_passthrough = is_passthrough

    def _unbind(self, address: str, driver: str) -> None:
        try:
            self.store.unbind(address, driver)
        except KernelInterfaceError as e:
            raise UnbindFailed(
                f"Cannot unbind {address} from {driver} (device busy or in use?): {e}",
                entity=address,
            ) from e
        self.catalog.update_current(address, None)
        logger.info("Unbound %s from %s", address, driver)

    def _bind(self, address: str, driver: str, unbound_from: Optional[str]) -> None:
        try:
            self.store.bind(address, driver)
            bound = self.probe.driver_of(address)
        except (KernelInterfaceError, IobindError) as e:
            raise BindFailed(
                f"Cannot bind {address} to {driver}: {e}",
                entity=address, unbound_from=unbound_from,
            ) from e
        if bound != driver:
            raise BindFailed(
                f"Bind of {address} to {driver} did not take effect "
                f"(bound to {bound or 'no driver'})",
                entity=address, unbound_from=unbound_from,
            )
        self.catalog.update_current(address, driver)
        logger.info("Bound %s to %s", address, driver)

    def rebind(self, address: str, target_driver: str) -> List[JournalEntry]:
        """
        Move a device to target_driver.

        Args:
            address: Device bus address
            target_driver: Driver to bind the device to

        Returns:
            A single (rebind, address, prior driver) journal entry, or an
            empty list if the device was already bound to target_driver

        Raises:
            DeviceNotFound: If the device's binding cannot be read
            KernelInterfaceError: If the original driver cannot be recorded;
                nothing changed
            UnbindFailed: If the device cannot be released; nothing changed
            BindFailed: If the bind fails; ``unbound_from`` tells whether the
                device was left without a driver
        """
        current = self.probe.driver_of(address)
        self.catalog.update_current(address, current)
        if current == target_driver:
            logger.debug("%s already bound to %s", address, target_driver)
            return []

        # The original driver is the native driver the device is taken from,
        # or None for an unbound device. A device already on a passthrough
        # driver only keeps what an earlier run recorded.
        created = False
        if not self.is_passthrough(current):
            original = current or self.catalog.history(address)
            # Recorded before the device moves so a failed registry write
            # leaves the device untouched
            created = self.catalog.record_original(address, original)

        try:
            if current is not None:
                self._unbind(address, current)
        except UnbindFailed:
            if created:
                self._discard_record(address)
            raise
        self._bind(address, target_driver, unbound_from=current)

        return [JournalEntry(ActionKind.REBIND, address, current)]

    def _discard_record(self, address: str) -> None:
        try:
            self.catalog.forget(address)
        except IobindError as e:
            logger.warning("Cannot discard driver record of %s: %s", address, e)

    def return_to(self, address: str, driver: Optional[str]) -> None:
        """
        Drive a device back to driver, or leave it unbound when driver is None.

        Used to reverse journaled rebinds and intermediate unbinds.

        Raises:
            UnbindFailed, BindFailed: If the device cannot be moved
        """
        current = self.probe.driver_of(address)
        if current == driver:
            return
        if current is not None:
            self._unbind(address, current)
        if driver is not None:
            self._bind(address, driver, unbound_from=current)

    def restore(self, address: str, fallback: Optional[str] = None) -> Optional[str]:
        """
        Return a device to its recorded original driver.

        Args:
            address: Device bus address
            fallback: Driver to use when no original driver is recorded

        Returns:
            The driver the device is now bound to (None if left unbound)

        Raises:
            RestoreUnavailable: If nothing is recorded and no fallback given
            UnbindFailed, BindFailed: If the device cannot be moved
        """
        if self.catalog.is_tracked(address):
            original = self.catalog.history(address)
        elif fallback is not None:
            original = fallback
        else:
            raise RestoreUnavailable(
                f"No original driver recorded for {address}; pass a fallback driver",
                entity=address,
            )

        self.return_to(address, original)
        self.catalog.forget(address)
        logger.info("Restored %s to %s", address, original or "no driver")
        return original
