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
Data models for host provisioning state, intents and the rollback journal.
"""

import re
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Set, FrozenSet, Union, Tuple
from enum import Enum


PCI_ADDRESS_RE = re.compile(
    r'^(?:(?P<domain>[0-9a-fA-F]{4}):)?'
    r'(?P<bus>[0-9a-fA-F]{2}):(?P<slot>[0-9a-fA-F]{2})\.(?P<func>[0-7])$'
)


def normalize_address(address: str) -> str:
    """
    Normalize a PCI bus address to the sysfs form ``DDDD:BB:DD.F``.

    Args:
        address: Full (``0000:02:02.0``) or short (``02:02.0``) bus address

    Returns:
        Lower-case bus address including the PCI domain

    Raises:
        ValueError: If the address is not a PCI bus address
    """
    match = PCI_ADDRESS_RE.match(address.strip())
    if not match:
        raise ValueError(f"Invalid PCI bus address: '{address}'")
    domain = match.group('domain') or '0000'
    return (
        f"{domain}:{match.group('bus')}:{match.group('slot')}."
        f"{match.group('func')}"
    ).lower()


class RunState(Enum):
    """
    Orchestration run state.

    States:
    - IDLE: Run created, nothing read yet
    - PROBING: Reading host state and building the plan
    - APPLYING: Executing plan steps in order
    - COMMITTED: All steps applied
    - ROLLING_BACK: Reversing journaled steps after a fatal error
    - FAILED: Run ended without reaching the desired state
    """
    IDLE = "idle"
    PROBING = "probing"
    APPLYING = "applying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


class ActionKind(Enum):
    """Kinds of reversible host changes recorded in the journal."""
    LOAD_MODULE = "load_module"
    MOUNT_HUGETLBFS = "mount_hugetlbfs"
    RESERVE_HUGEPAGES = "reserve_hugepages"
    REBIND = "rebind"
    UNBIND = "unbind"


@dataclass
class HostModuleState:
    """Kernel module as seen in the module table."""
    name: str
    loaded: bool
    parameters: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ModuleRequirement:
    """Module a setup depends on, with the parameters it must carry."""
    name: str
    parameters: Tuple[Tuple[str, str], ...] = ()

    @property
    def params(self) -> Dict[str, str]:
        return dict(self.parameters)


@dataclass(frozen=True)
class HugepageSpec:
    """Desired huge-page reservation for one (page size, NUMA node) pool."""
    page_size_kb: int
    count: int
    mount_path: str = "/dev/hugepages"
    node: Optional[int] = 0
    min_count: Optional[int] = None

    @property
    def pool_key(self) -> str:
        """Identifier of the reservation pool, e.g. ``2048kB@node0``."""
        where = "system" if self.node is None else f"node{self.node}"
        return f"{self.page_size_kb}kB@{where}"


@dataclass
class PciDevice:
    """PCI device candidate for passthrough."""
    address: str
    device_class: str
    vendor_id: Optional[str] = None
    device_id: Optional[str] = None
    description: Optional[str] = None
    current_driver: Optional[str] = None
    original_driver: Optional[str] = None

    def record_original(self, driver: Optional[str]) -> None:
        """Record the original driver; the first recorded value is kept."""
        if self.original_driver is None and driver:
            self.original_driver = driver


@dataclass(frozen=True)
class DeviceFilter:
    """Selects devices from the PCI enumeration."""
    device_class: str = "0200"
    vendor_id: Optional[str] = None
    addresses: FrozenSet[str] = frozenset()

    def matches(self, device: PciDevice) -> bool:
        if self.device_class and device.device_class != self.device_class:
            return False
        if self.vendor_id and device.vendor_id != self.vendor_id:
            return False
        return True


@dataclass(frozen=True)
class JournalEntry:
    """A completed reversible action: (kind, target entity, prior value)."""
    kind: ActionKind
    target: str
    prior: Optional[Union[str, int]] = None

    def __str__(self) -> str:
        return f"({self.kind.value}, {self.target}, {self.prior})"


class RollbackJournal:
    """
    Ordered log of completed reversible actions.

    Entries are appended only after the step that produced them succeeded
    and are consumed last-in first-out.
    """

    def __init__(self, entries: Optional[List[JournalEntry]] = None):
        self._entries: List[JournalEntry] = list(entries or [])

    def append(self, entry: JournalEntry) -> None:
        self._entries.append(entry)

    def extend(self, entries: List[JournalEntry]) -> None:
        for entry in entries:
            self.append(entry)

    def pop(self) -> JournalEntry:
        return self._entries.pop()

    def remove(self, entry: JournalEntry) -> None:
        self._entries.remove(entry)

    @property
    def entries(self) -> List[JournalEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __iter__(self):
        return iter(list(self._entries))


@dataclass(frozen=True)
class SetupIntent:
    """Bind devices to a passthrough driver and reserve huge pages."""
    target_driver: str
    device_filter: DeviceFilter = DeviceFilter()
    hugepages: Optional[HugepageSpec] = None
    modules: Tuple[ModuleRequirement, ...] = ()


@dataclass(frozen=True)
class TeardownIntent:
    """Return devices to their original drivers."""
    device_filter: DeviceFilter = DeviceFilter()
    fallback_driver: Optional[str] = None
    restore_hugepages: bool = False


ReconciliationIntent = Union[SetupIntent, TeardownIntent]


@dataclass
class HostState:
    """
    Snapshot of host state returned by the probe.

    Values that could not be read are ``None`` and their key is listed in
    ``unknown`` (``mount:<path>``, ``hugepages:<pool>``, ``module:<name>``,
    ``device:<address>``).
    """
    mounts: Dict[str, Optional[bool]] = field(default_factory=dict)
    hugepages: Dict[str, Optional[int]] = field(default_factory=dict)
    modules: Dict[str, Optional[HostModuleState]] = field(default_factory=dict)
    drivers: Dict[str, Optional[str]] = field(default_factory=dict)
    unknown: Set[str] = field(default_factory=set)

    def is_known(self, key: str) -> bool:
        return key not in self.unknown


@dataclass
class PlannedStep:
    """One step of a setup plan."""
    kind: ActionKind
    target: str
    description: str


@dataclass
class RunResult:
    """Outcome of one orchestration run."""
    state: RunState
    journal: List[JournalEntry] = field(default_factory=list)
    steps_total: int = 0
    steps_applied: int = 0
    error: Optional[Exception] = None
    rolled_back: bool = False
    rollback_failures: List[Tuple[JournalEntry, str]] = field(default_factory=list)
    restored: List[str] = field(default_factory=list)
    unrestored: Dict[str, str] = field(default_factory=dict)
    plan: List[PlannedStep] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.state == RunState.COMMITTED

    @property
    def rollback_complete(self) -> bool:
        """True when a rollback ran and every journaled step was reversed."""
        return self.rolled_back and not self.rollback_failures
