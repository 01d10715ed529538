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
Kernel module management.
"""

import logging
from typing import Dict, List, Optional

from .models import ActionKind, HostModuleState, JournalEntry
from .store import ResourceStore
from .exceptions import KernelInterfaceError, ModuleLoadFailed, ModuleParamConflict

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"y", "1", "true", "yes", "on"}
_FALSE_VALUES = {"n", "0", "false", "no", "off"}


def normalize_param(value: str) -> str:
    """Map the kernel's renderings of booleans (Y/N, 1/0) onto one form."""
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return "1"
    if lowered in _FALSE_VALUES:
        return "0"
    return str(value).strip()


def param_mismatches(state: HostModuleState, params: Dict[str, str]) -> Dict[str, tuple]:
    """Return param -> (required, actual) for every required parameter that differs."""
    mismatches = {}
    for key, required in params.items():
        actual = state.parameters.get(key)
        if actual is None or normalize_param(actual) != normalize_param(required):
            mismatches[key] = (required, actual)
    return mismatches


class ModuleManager:
    """Loads kernel modules with required parameters, idempotently."""

    def __init__(self, store: ResourceStore):
        self.store = store

    def ensure_loaded(self, module: str, params: Optional[Dict[str, str]] = None) -> List[JournalEntry]:
        """
        Ensure a module is loaded with the given parameters.

        Args:
            module: Module name
            params: Parameters the loaded module must carry

        Returns:
            Journal entries for the changes made (empty if already satisfied)

        Raises:
            ModuleParamConflict: If the module is loaded with other parameters.
                Reloading is not attempted since devices may depend on it.
            ModuleLoadFailed: If loading fails
        """
        params = params or {}
        try:
            state = self.store.read_module(module)
        except KernelInterfaceError as e:
            raise ModuleLoadFailed(f"Cannot read state of module {module}: {e}", entity=module) from e

        if state.loaded:
            mismatches = param_mismatches(state, params)
            if mismatches:
                detail = ", ".join(
                    f"{key}={actual!r} (required {required!r})"
                    for key, (required, actual) in sorted(mismatches.items())
                )
                raise ModuleParamConflict(
                    f"Module {module} is loaded with conflicting parameters: {detail}. "
                    f"Unload it manually before retrying.",
                    entity=module,
                )
            logger.debug("Module %s already loaded", module)
            return []

        try:
            self.store.load_module(module, params)
        except KernelInterfaceError as e:
            raise ModuleLoadFailed(f"Failed to load module {module}: {e}", entity=module) from e

        logger.info("Loaded module %s %s", module,
                    " ".join(f"{k}={v}" for k, v in params.items()))
        return [JournalEntry(ActionKind.LOAD_MODULE, module, None)]

    def unload(self, module: str) -> None:
        """
        Unload a module loaded by this run.

        Raises:
            KernelInterfaceError: If the module cannot be removed
        """
        self.store.unload_module(module)
        logger.info("Unloaded module %s", module)
