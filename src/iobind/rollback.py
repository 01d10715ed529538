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
Rollback journal replay.

Each journal entry records a completed change and the value it replaced.
Replaying the journal last-in first-out puts every journaled entity back to
its pre-run value. Replay is best-effort: a failure to reverse one entry is
recorded and the remaining entries are still attempted.
"""

import logging
from typing import List, Tuple

from .models import ActionKind, JournalEntry, RollbackJournal
from .modules import ModuleManager
from .hugepages import HugepageAllocator, parse_pool_target
from .rebind import DriverRebinder
from .exceptions import IobindError

logger = logging.getLogger(__name__)


class JournalReplayer:
    """Reverses journal entries using the components that produced them."""

    def __init__(
        self,
        modules: ModuleManager,
        hugepages: HugepageAllocator,
        rebinder: DriverRebinder,
    ):
        self.modules = modules
        self.hugepages = hugepages
        self.rebinder = rebinder

    def reverse(self, entry: JournalEntry) -> None:
        """
        Undo a single journaled change.

        Raises:
            IobindError: If the change cannot be undone
        """
        if entry.kind == ActionKind.LOAD_MODULE:
            self.modules.unload(entry.target)
        elif entry.kind == ActionKind.MOUNT_HUGETLBFS:
            self.hugepages.unmount(entry.target)
        elif entry.kind == ActionKind.RESERVE_HUGEPAGES:
            page_size_kb, node = parse_pool_target(entry.target)
            self.hugepages.restore(page_size_kb, node, int(entry.prior))
        elif entry.kind in (ActionKind.REBIND, ActionKind.UNBIND):
            self.rebinder.return_to(entry.target, entry.prior)
        else:
            raise ValueError(f"Unknown journal action: {entry.kind}")

    def unwind(self, journal: RollbackJournal) -> List[Tuple[JournalEntry, str]]:
        """
        Consume the journal in reverse order.

        Returns:
            (entry, reason) for every entry that could not be reversed
        """
        failures = []
        while journal:
            entry = journal.pop()
            try:
                self.reverse(entry)
                logger.info("Rolled back %s", entry)
            except IobindError as e:
                logger.warning("Rollback of %s failed: %s", entry, e)
                failures.append((entry, str(e)))
        return failures
