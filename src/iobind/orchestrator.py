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
Provisioning orchestration with rollback.

The ProvisioningOrchestrator realizes a SetupIntent or TeardownIntent against
the host. Each run is a small state machine:

    idle -> probing -> applying (step i of N) -> committed
                       applying -> rolling_back -> failed

Setup workflow:
1. Lock: take the host-wide run lock; a held lock rejects the run
2. Probe: read modules, huge-page pool and device bindings
3. Plan: order the steps (modules, mount, reservation, device rebinds) and
   drop the ones the probe shows are already satisfied
4. Apply: run steps in order, appending journal entries after each success
5. On a fatal error, or a timeout between steps, replay the journal in
   reverse and end in failed, whatever the outcome of the replay

Teardown rebuilds a journal from the device registry (original drivers
recorded at setup time) and restores each device independently; one device
failing does not stop the others.
"""

import os
import fcntl
import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .config import Settings
from .models import (
    ActionKind,
    DeviceFilter,
    HostState,
    JournalEntry,
    PciDevice,
    PlannedStep,
    RollbackJournal,
    RunResult,
    RunState,
    SetupIntent,
    TeardownIntent,
)
from .store import ResourceStore, SysfsResourceStore
from .registry import DeviceRegistry
from .probe import ResourceProbe
from .catalog import DeviceCatalog, ManagementInterfacePolicy
from .modules import ModuleManager, param_mismatches
from .hugepages import HugepageAllocator, parse_pool_target, pool_target
from .rebind import DriverRebinder
from .rollback import JournalReplayer
from .exceptions import (
    BindFailed,
    ConcurrentRunRejected,
    IobindError,
    KernelInterfaceError,
    RunTimedOut,
)

logger = logging.getLogger(__name__)


@dataclass
class _Step:
    planned: PlannedStep
    action: Callable[[], List[JournalEntry]]


class ProvisioningOrchestrator:
    """
    Sequences probe, module, huge-page and rebind operations for one run.

    Attributes:
        settings: Host paths and defaults
        store: Resource store all components go through
        registry: Durable record of original drivers and huge-page counts
        lock_file: Path to the advisory lock serializing runs
        state: Current RunState of the latest run
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ResourceStore] = None,
        registry: Optional[DeviceRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or Settings()
        self.store = store or SysfsResourceStore(
            str(self.settings.sysfs_root), str(self.settings.mounts_file)
        )
        self.registry = registry or DeviceRegistry(self.settings.registry_file)
        self.lock_file = Path(self.settings.lock_file)
        self.clock = clock

        self.probe = ResourceProbe(self.store)
        self.catalog = DeviceCatalog(
            self.store,
            self.registry,
            ManagementInterfacePolicy(self.settings.reserved_leading),
        )
        self.modules = ModuleManager(self.store)
        self.hugepages = HugepageAllocator(self.store)
        self.rebinder = DriverRebinder(
            self.store, self.probe, self.catalog, self.settings.is_passthrough
        )
        self.replayer = JournalReplayer(self.modules, self.hugepages, self.rebinder)
        self.state = RunState.IDLE

    def _transition(self, result: RunResult, state: RunState) -> None:
        logger.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state
        result.state = state

    @contextmanager
    def _acquire_lock(self):
        """
        Hold the run lock for the duration of a run.

        The lock is an exclusive flock on the lock file, which also carries
        the owner's PID for error messages. The kernel drops the flock when
        its owner exits, so a lock file left by a dead process is taken over
        without removing it.

        Raises:
            ConcurrentRunRejected: If another run holds the lock
            KernelInterfaceError: If the lock file cannot be opened
        """
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_file, os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as e:
            raise KernelInterfaceError(f"Cannot open lock file {self.lock_file}: {e}") from e

        lock_acquired = False
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                owner = self._lock_owner()
                raise ConcurrentRunRejected(
                    f"Another iobind run holds {self.lock_file}"
                    + (f" (PID {owner})" if owner else ""),
                    entity=str(self.lock_file),
                )
            lock_acquired = True

            previous = self._lock_owner()
            if previous is not None and previous != os.getpid():
                logger.warning("Taking over lock %s left by PID %d", self.lock_file, previous)
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode())

            yield

        finally:
            if lock_acquired:
                os.ftruncate(fd, 0)
            os.close(fd)

    def _lock_owner(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    # Planning

    def _build_steps(
        self,
        intent: SetupIntent,
        state: HostState,
        devices: List[PciDevice],
    ) -> List[_Step]:
        steps = []

        for req in intent.modules:
            module_state = state.modules.get(req.name)
            if (state.is_known(f"module:{req.name}") and module_state is not None
                    and module_state.loaded and not param_mismatches(module_state, req.params)):
                logger.debug("Skipping satisfied step: module %s", req.name)
                continue
            steps.append(_Step(
                PlannedStep(ActionKind.LOAD_MODULE, req.name,
                            f"load module {req.name}"
                            + "".join(f" {k}={v}" for k, v in req.parameters)),
                lambda req=req: self.modules.ensure_loaded(req.name, req.params),
            ))

        spec = intent.hugepages
        if spec is not None:
            if state.mounts.get(spec.mount_path) is not True:
                steps.append(_Step(
                    PlannedStep(ActionKind.MOUNT_HUGETLBFS, spec.mount_path,
                                f"mount hugetlbfs at {spec.mount_path}"),
                    lambda: self.hugepages.ensure_mounted(spec),
                ))
            if state.hugepages.get(spec.pool_key) != spec.count:
                steps.append(_Step(
                    PlannedStep(ActionKind.RESERVE_HUGEPAGES, spec.pool_key,
                                f"reserve {spec.count} huge pages in {spec.pool_key}"),
                    lambda: self.hugepages.ensure_count(spec),
                ))

        for device in devices:
            key = f"device:{device.address}"
            current = state.drivers.get(device.address)
            if state.is_known(key) and current == intent.target_driver:
                logger.debug("Skipping satisfied step: %s on %s",
                             device.address, intent.target_driver)
                continue
            steps.append(_Step(
                PlannedStep(ActionKind.REBIND, device.address,
                            f"rebind {device.address} from {current or 'no driver'} "
                            f"to {intent.target_driver}"),
                lambda address=device.address: self.rebinder.rebind(
                    address, intent.target_driver
                ),
            ))

        return steps

    def _prepare(self, intent: SetupIntent) -> List[_Step]:
        devices = self.catalog.select(intent.device_filter)
        state = self.probe.probe(
            modules=intent.modules,
            hugepages=intent.hugepages,
            devices=[d.address for d in devices],
        )
        if state.unknown:
            logger.debug("Probe could not read: %s", ", ".join(sorted(state.unknown)))
        return self._build_steps(intent, state, devices)

    def plan(self, intent: SetupIntent) -> List[PlannedStep]:
        """
        Return the steps a setup would apply, without applying them.

        Raises:
            DeviceNotFound, ProtectedDeviceRejected: If the device selection
                is invalid
        """
        return [step.planned for step in self._prepare(intent)]

    # Setup

    def setup(self, intent: SetupIntent, timeout: Optional[float] = None) -> RunResult:
        """
        Drive the host to the state described by a setup intent.

        Args:
            intent: Devices, target driver, modules and huge pages to provision
            timeout: Seconds after which the run aborts between two steps

        Returns:
            RunResult in state COMMITTED or FAILED

        Raises:
            ConcurrentRunRejected: If another run holds the lock
        """
        result = RunResult(state=RunState.IDLE)
        self.state = RunState.IDLE
        started = self.clock()

        with self._acquire_lock():
            self._transition(result, RunState.PROBING)
            try:
                steps = self._prepare(intent)
            except IobindError as e:
                logger.error("Setup rejected: %s", e)
                result.error = e
                self._transition(result, RunState.FAILED)
                return result

            result.plan = [step.planned for step in steps]
            result.steps_total = len(steps)
            journal = RollbackJournal()
            created_pools = []
            tracked_before = set(self.catalog.tracked_addresses())

            self._transition(result, RunState.APPLYING)
            for index, step in enumerate(steps, 1):
                try:
                    if (timeout is not None and index > 1
                            and self.clock() - started > timeout):
                        raise RunTimedOut(
                            f"Run exceeded its {timeout}s timeout before step "
                            f"{index} of {len(steps)}"
                        )
                    logger.info("Step %d/%d: %s", index, len(steps), step.planned.description)
                    entries = step.action()
                    for entry in entries:
                        journal.append(entry)
                    self._record_pools(entries, created_pools)
                except IobindError as e:
                    if isinstance(e, BindFailed) and e.unbound_from is not None:
                        # The device is now driver-less; rollback must rebind it
                        journal.append(JournalEntry(ActionKind.UNBIND, e.entity, e.unbound_from))
                    logger.error("Step %d/%d failed: %s", index, len(steps), e)
                    result.error = e
                    self._roll_back(result, journal, created_pools, tracked_before)
                    return result
                result.steps_applied = index

            result.journal = journal.entries
            self._transition(result, RunState.COMMITTED)
            logger.info("Setup committed (%d of %d steps changed host state)",
                        len(journal), len(steps))
            return result

    def _record_pools(self, entries: List[JournalEntry], created_pools: List[str]) -> None:
        # Only the first run that changes a pool records its pre-setup count
        for entry in entries:
            if (entry.kind == ActionKind.RESERVE_HUGEPAGES
                    and self.registry.hugepage_count(entry.target) is None):
                self.registry.record_hugepages(entry.target, int(entry.prior))
                created_pools.append(entry.target)

    def _roll_back(self, result: RunResult, journal: RollbackJournal,
                   created_pools: List[str], tracked_before: Set[str]) -> None:
        result.journal = journal.entries
        if journal:
            self._transition(result, RunState.ROLLING_BACK)
            result.rollback_failures = self.replayer.unwind(journal)
            result.rolled_back = True
            if result.rollback_failures:
                logger.warning("Rollback left %d change(s) in place",
                               len(result.rollback_failures))

        # Registry records created by this run are dropped once the change
        # they describe is undone; records of irreversible changes are kept
        # for teardown
        failed_targets = {entry.target for entry, _ in result.rollback_failures}
        for target in created_pools:
            if target not in failed_targets:
                self._discard(self.registry.forget_hugepages, target)
        for address in self.catalog.tracked_addresses():
            if address not in tracked_before and address not in failed_targets:
                self._discard(self.catalog.forget, address)
        self._transition(result, RunState.FAILED)

    @staticmethod
    def _discard(forget: Callable[[str], None], key: str) -> None:
        try:
            forget(key)
        except IobindError as e:
            logger.warning("Cannot remove registry record %s: %s", key, e)

    # Teardown

    def _teardown_targets(self, device_filter: DeviceFilter) -> List[str]:
        if device_filter.addresses:
            return sorted(device_filter.addresses)
        return [d.address for d in self.catalog.discover(device_filter)]

    def teardown(self, intent: TeardownIntent) -> RunResult:
        """
        Return devices to their original drivers, best-effort per device.

        Args:
            intent: Devices to restore and optional fallback driver

        Returns:
            RunResult in state COMMITTED, or FAILED with ``unrestored``
            listing the devices left on another driver

        Raises:
            ConcurrentRunRejected: If another run holds the lock
        """
        result = RunResult(state=RunState.IDLE)
        self.state = RunState.IDLE

        with self._acquire_lock():
            self._transition(result, RunState.PROBING)
            try:
                addresses = self._teardown_targets(intent.device_filter)
            except IobindError as e:
                logger.error("Teardown rejected: %s", e)
                result.error = e
                self._transition(result, RunState.FAILED)
                return result
            state = self.probe.probe(devices=addresses)

            journal = RollbackJournal()
            for address in addresses:
                if self.catalog.is_tracked(address):
                    journal.append(JournalEntry(
                        ActionKind.REBIND, address, self.catalog.history(address)
                    ))
                elif self.settings.is_passthrough(state.drivers.get(address)):
                    journal.append(JournalEntry(ActionKind.REBIND, address, intent.fallback_driver))
                elif not state.is_known(f"device:{address}"):
                    result.unrestored[address] = "device binding cannot be read"
                else:
                    logger.debug("%s is not provisioned, nothing to restore", address)

            result.steps_total = len(journal)
            self._transition(result, RunState.APPLYING)
            for entry in reversed(journal.entries):
                try:
                    self.rebinder.restore(entry.target, fallback=intent.fallback_driver)
                except IobindError as e:
                    logger.warning("Cannot restore %s: %s", entry.target, e)
                    result.unrestored[entry.target] = str(e)
                    continue
                journal.remove(entry)
                result.restored.append(entry.target)
                result.steps_applied += 1

            if intent.restore_hugepages:
                self._restore_hugepages()

            result.journal = journal.entries
            if result.unrestored:
                self._transition(result, RunState.FAILED)
                logger.warning("Teardown left %d device(s) unrestored", len(result.unrestored))
            else:
                self._transition(result, RunState.COMMITTED)
            return result

    def _restore_hugepages(self) -> None:
        # Huge pages are not owned exclusively by iobind: restoring the
        # pre-setup count is best-effort and never fails a teardown
        for target, count in sorted(self.registry.hugepage_pools().items()):
            page_size_kb, node = parse_pool_target(target)
            try:
                self.hugepages.restore(page_size_kb, node, count)
            except IobindError as e:
                logger.warning("Cannot restore huge-page pool %s: %s", target, e)
                continue
            self._discard(self.registry.forget_hugepages, target)

    # Status

    def status(self, device_filter: DeviceFilter,
               page_size_kb: Optional[int] = None,
               node: Optional[int] = None) -> Dict:
        """
        Summarize devices and huge-page pools without changing anything.

        Returns:
            Dict with ``reserved`` and ``candidates`` (lists of PciDevice),
            ``tracked`` (address -> original driver) and ``hugepages``
            (pool -> count, None when unreadable)
        """
        reserved = self.catalog.reserved(device_filter)
        candidates = self.catalog.discover(device_filter)

        pools = {pool_target(page_size_kb or self.settings.page_size_kb,
                             self.settings.numa_node if node is None else node)}
        pools.update(self.registry.hugepage_pools())
        hugepages = {}
        for target in sorted(pools):
            size, pool_node = parse_pool_target(target)
            try:
                hugepages[target] = self.store.read_hugepages(size, pool_node)
            except IobindError:
                hugepages[target] = None

        return {
            "reserved": reserved,
            "candidates": candidates,
            "tracked": self.registry.devices(),
            "hugepages": hugepages,
        }
