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
iobind: Host Preparation for Kernel-Bypass Networking

Reserves huge pages, loads passthrough driver modules and rebinds NICs to a
passthrough driver, rolling every change back when a setup fails part-way.
"""

__version__ = "0.1.0"

from .orchestrator import ProvisioningOrchestrator
from .config import Settings, passthrough_modules
from .store import ResourceStore, SysfsResourceStore
from .registry import DeviceRegistry
from .models import (
    DeviceFilter,
    HugepageSpec,
    ModuleRequirement,
    RunResult,
    RunState,
    SetupIntent,
    TeardownIntent,
)
from .exceptions import (
    IobindError,
    KernelInterfaceError,
    ResourceError,
    ModuleParamConflict,
    ModuleLoadFailed,
    InsufficientHugepages,
    DeviceNotFound,
    ProtectedDeviceRejected,
    UnbindFailed,
    BindFailed,
    ConcurrentRunRejected,
    RunTimedOut,
    RestoreUnavailable,
)

__all__ = [
    # Core classes
    'ProvisioningOrchestrator',
    'Settings',
    'passthrough_modules',
    'ResourceStore',
    'SysfsResourceStore',
    'DeviceRegistry',
    # Models
    'DeviceFilter',
    'HugepageSpec',
    'ModuleRequirement',
    'RunResult',
    'RunState',
    'SetupIntent',
    'TeardownIntent',
    # Exceptions
    'IobindError',
    'KernelInterfaceError',
    'ResourceError',
    'ModuleParamConflict',
    'ModuleLoadFailed',
    'InsufficientHugepages',
    'DeviceNotFound',
    'ProtectedDeviceRejected',
    'UnbindFailed',
    'BindFailed',
    'ConcurrentRunRejected',
    'RunTimedOut',
    'RestoreUnavailable',
]
