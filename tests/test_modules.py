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
Tests for kernel module management.
"""

import pytest

from iobind.exceptions import ModuleLoadFailed, ModuleParamConflict
from iobind.models import ActionKind, JournalEntry
from iobind.modules import ModuleManager, normalize_param


class TestModuleManager:
    """Test idempotent module loading."""

    def test_load_missing_module(self, host):
        """Test that an unloaded module is loaded and journaled."""
        manager = ModuleManager(host)

        entries = manager.ensure_loaded("vfio", {"enable_unsafe_noiommu_mode": "1"})

        assert entries == [JournalEntry(ActionKind.LOAD_MODULE, "vfio", None)]
        assert host.modules["vfio"] == {"enable_unsafe_noiommu_mode": "1"}

    def test_already_loaded_is_noop(self, host):
        """Test that a loaded module with matching parameters is left alone."""
        host.modules["vfio"] = {"enable_unsafe_noiommu_mode": "Y"}
        manager = ModuleManager(host)

        entries = manager.ensure_loaded("vfio", {"enable_unsafe_noiommu_mode": "1"})

        assert entries == []
        assert ("load", "vfio") not in host.calls

    def test_param_conflict(self, host):
        """Test that a loaded module with other parameters is an error."""
        host.modules["vfio"] = {"enable_unsafe_noiommu_mode": "N"}
        manager = ModuleManager(host)

        with pytest.raises(ModuleParamConflict) as exc_info:
            manager.ensure_loaded("vfio", {"enable_unsafe_noiommu_mode": "1"})

        assert exc_info.value.entity == "vfio"
        assert host.modules["vfio"] == {"enable_unsafe_noiommu_mode": "N"}

    def test_load_failure(self, host):
        """Test that a missing module raises ModuleLoadFailed."""
        manager = ModuleManager(host)

        with pytest.raises(ModuleLoadFailed, match="igb_uio") as exc_info:
            manager.ensure_loaded("igb_uio")

        assert exc_info.value.entity == "igb_uio"

    def test_unload(self, host):
        """Test unloading a module."""
        host.modules["vfio"] = {}
        ModuleManager(host).unload("vfio")
        assert "vfio" not in host.modules

    @pytest.mark.parametrize("value,expected", [
        ("Y", "1"), ("N", "0"), ("1", "1"), ("true", "1"), ("off", "0"), ("256", "256"),
    ])
    def test_normalize_param(self, value, expected):
        """Test kernel boolean normalization."""
        assert normalize_param(value) == expected
