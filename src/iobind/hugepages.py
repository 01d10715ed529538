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
Huge-page reservation.
"""

import logging
from typing import List, Optional

from .models import ActionKind, HugepageSpec, JournalEntry
from .store import ResourceStore
from .exceptions import InsufficientHugepages, KernelInterfaceError, ResourceError

logger = logging.getLogger(__name__)


def pool_target(page_size_kb: int, node: Optional[int]) -> str:
    """Journal target for a pool, parsed back by parse_pool_target()."""
    return f"{page_size_kb}:{'' if node is None else node}"


def parse_pool_target(target: str):
    size, _, node = target.partition(":")
    return int(size), (int(node) if node else None)


class HugepageAllocator:
    """Mounts hugetlbfs and sets huge-page reservation counts."""

    def __init__(self, store: ResourceStore):
        self.store = store

    def ensure_reserved(self, spec: HugepageSpec) -> List[JournalEntry]:
        """
        Ensure the mount exists and the pool holds the desired count.

        Args:
            spec: Desired reservation

        Returns:
            Journal entries for the changes made (empty if already satisfied)

        Raises:
            InsufficientHugepages: If fewer than spec.min_count pages were
                granted. The pool is left at the granted count.
            ResourceError: If the mount or the pool cannot be accessed
        """
        entries = self.ensure_mounted(spec)
        entries.extend(self.ensure_count(spec))
        return entries

    def ensure_mounted(self, spec: HugepageSpec) -> List[JournalEntry]:
        """Mount hugetlbfs at spec.mount_path unless already mounted."""
        try:
            if self.store.is_hugetlbfs_mounted(spec.mount_path):
                logger.debug("hugetlbfs already mounted at %s", spec.mount_path)
                return []
            self.store.mount_hugetlbfs(spec.mount_path)
        except KernelInterfaceError as e:
            raise ResourceError(
                f"Cannot mount hugetlbfs at {spec.mount_path}: {e}", entity=spec.mount_path
            ) from e
        logger.info("Mounted hugetlbfs at %s", spec.mount_path)
        return [JournalEntry(ActionKind.MOUNT_HUGETLBFS, spec.mount_path, None)]

    def ensure_count(self, spec: HugepageSpec) -> List[JournalEntry]:
        """
        Set the pool's reservation to spec.count.

        The count is written as an absolute value. The kernel may grant fewer
        pages than requested when memory is fragmented, so the granted count
        is read back.
        """
        try:
            if not self.store.is_hugetlbfs_mounted(spec.mount_path):
                raise ResourceError(
                    f"No hugetlbfs mounted at {spec.mount_path}", entity=spec.mount_path
                )
            previous = self.store.read_hugepages(spec.page_size_kb, spec.node)
            if previous == spec.count:
                logger.debug("Pool %s already holds %d pages", spec.pool_key, previous)
                return []
            self.store.write_hugepages(spec.page_size_kb, spec.node, spec.count)
            granted = self.store.read_hugepages(spec.page_size_kb, spec.node)
        except KernelInterfaceError as e:
            raise ResourceError(
                f"Cannot reserve huge pages in pool {spec.pool_key}: {e}",
                entity=spec.pool_key,
            ) from e

        if spec.min_count is not None and granted < spec.min_count:
            raise InsufficientHugepages(
                f"Pool {spec.pool_key}: requested {spec.count} pages, kernel granted "
                f"{granted} (minimum {spec.min_count}). Free memory or reserve pages "
                f"at boot before retrying.",
                entity=spec.pool_key,
                requested=spec.count,
                granted=granted,
            )
        if granted < spec.count:
            logger.warning("Pool %s: requested %d pages, kernel granted %d",
                           spec.pool_key, spec.count, granted)
        if granted == previous:
            logger.debug("Pool %s unchanged at %d pages", spec.pool_key, granted)
            return []

        logger.info("Pool %s: %d -> %d pages", spec.pool_key, previous, granted)
        return [JournalEntry(
            ActionKind.RESERVE_HUGEPAGES, pool_target(spec.page_size_kb, spec.node), previous
        )]

    def restore(self, page_size_kb: int, node: Optional[int], count: int) -> None:
        """Write a previous reservation count back."""
        self.store.write_hugepages(page_size_kb, node, count)
        logger.info("Restored pool %s to %d pages", pool_target(page_size_kb, node), count)

    def unmount(self, path: str) -> None:
        self.store.unmount(path)
        logger.info("Unmounted hugetlbfs at %s", path)
