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
Durable device metadata.

Setup and teardown usually run as separate process invocations, so the
original driver of every rebound device (and the pre-setup huge-page counts)
is kept in a small JSON file keyed by bus address.
"""

import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from .exceptions import KernelInterfaceError


class DeviceRegistry:
    """
    JSON-backed record of original drivers and huge-page counts.

    File format::

        {
          "devices": {"0000:02:02.0": {"original_driver": "e1000"}},
          "hugepages": {"2048:0": 0}
        }
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data = self._load()

    def _load(self) -> Dict:
        if not self.path.exists():
            return {"devices": {}, "hugepages": {}}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise KernelInterfaceError(f"Failed to read device registry {self.path}: {e}") from e
        data.setdefault("devices", {})
        data.setdefault("hugepages", {})
        return data

    def _save(self, data: Dict) -> None:
        """Write data to disk, then make it the in-memory state."""
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".registry-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise KernelInterfaceError(f"Failed to write device registry {self.path}: {e}") from e
        self._data = data

    def original_driver(self, address: str) -> Optional[str]:
        record = self._data["devices"].get(address)
        return record.get("original_driver") if record else None

    def has_device(self, address: str) -> bool:
        return address in self._data["devices"]

    def devices(self) -> Dict[str, Optional[str]]:
        """Return bus address -> recorded original driver."""
        return {
            address: record.get("original_driver")
            for address, record in self._data["devices"].items()
        }

    def record_device(self, address: str, original_driver: Optional[str]) -> bool:
        """
        Record a device's original driver; an existing record is kept.

        Returns:
            True if a new record was written
        """
        if address in self._data["devices"]:
            return False
        data = copy.deepcopy(self._data)
        data["devices"][address] = {"original_driver": original_driver}
        self._save(data)
        return True

    def forget_device(self, address: str) -> None:
        if address not in self._data["devices"]:
            return
        data = copy.deepcopy(self._data)
        del data["devices"][address]
        self._save(data)

    def hugepage_count(self, pool_key: str) -> Optional[int]:
        return self._data["hugepages"].get(pool_key)

    def hugepage_pools(self) -> Dict[str, int]:
        return dict(self._data["hugepages"])

    def record_hugepages(self, pool_key: str, count: int) -> None:
        """Record a pool's pre-setup count; an existing record is kept."""
        if pool_key in self._data["hugepages"]:
            return
        data = copy.deepcopy(self._data)
        data["hugepages"][pool_key] = count
        self._save(data)

    def forget_hugepages(self, pool_key: str) -> None:
        if pool_key not in self._data["hugepages"]:
            return
        data = copy.deepcopy(self._data)
        del data["hugepages"][pool_key]
        self._save(data)
