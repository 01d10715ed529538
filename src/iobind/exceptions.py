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
Exception classes for iobind provisioning errors.

Every error that concerns a host entity (module, device, huge-page pool)
carries that entity's identifier in ``entity`` so callers can report it.
"""

from typing import Optional


class IobindError(Exception):
    """Base exception for all iobind errors."""

    def __init__(self, message: str, entity: Optional[str] = None):
        super().__init__(message)
        self.entity = entity


class KernelInterfaceError(IobindError):
    """Raised when a sysfs/procfs access or a system command fails."""


class ResourceError(IobindError):
    """Raised when resource reservation operations fail."""


class ModuleParamConflict(IobindError):
    """Raised when a module is loaded with parameters other than the required ones."""


class ModuleLoadFailed(IobindError):
    """Raised when a kernel module cannot be loaded."""


class InsufficientHugepages(ResourceError):
    """Raised when the kernel grants fewer huge pages than the declared minimum."""

    def __init__(self, message: str, entity: Optional[str] = None,
                 requested: int = 0, granted: int = 0):
        super().__init__(message, entity)
        self.requested = requested
        self.granted = granted


class DeviceNotFound(IobindError):
    """Raised when a requested PCI device does not exist on the host."""


class ProtectedDeviceRejected(IobindError):
    """Raised when a request targets a device reserved for host management."""


class UnbindFailed(IobindError):
    """Raised when a device cannot be released from its current driver."""


class BindFailed(IobindError):
    """
    Raised when a device cannot be bound to a driver.

    ``unbound_from`` is set when the device was released from that driver
    before the bind failed, i.e. the device is now left without a driver.
    """

    def __init__(self, message: str, entity: Optional[str] = None,
                 unbound_from: Optional[str] = None):
        super().__init__(message, entity)
        self.unbound_from = unbound_from


class ConcurrentRunRejected(IobindError):
    """Raised when another provisioning run holds the host lock."""


class RunTimedOut(IobindError):
    """Raised when a run exceeds its deadline between two steps."""


class RestoreUnavailable(IobindError):
    """Raised when a device has no recorded original driver and no fallback was given."""
