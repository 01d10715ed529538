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
Tests for iobind CLI helper functions.
"""

import logging

import click
import pytest

from iobind.config import Settings
from iobind.models import ActionKind, JournalEntry, RunResult, RunState
from iobind.utils import configure_logging, echo_journal, get_settings, is_debug, parse_addresses


class TestParseAddresses:
    """Test PCI address option parsing."""

    def test_short_addresses_get_domain(self):
        """Test that bus:slot.func gains the default domain."""
        assert parse_addresses(None, None, ("02:02.0", "0000:02:03.0")) == (
            "0000:02:02.0", "0000:02:03.0",
        )

    def test_empty(self):
        """Test that no addresses parse to an empty tuple."""
        assert parse_addresses(None, None, ()) == ()

    def test_invalid_address(self):
        """Test that malformed addresses are usage errors."""
        with pytest.raises(click.BadParameter):
            parse_addresses(None, None, ("eth1",))


class TestConfigureLogging:
    """Test log level selection."""

    @pytest.mark.parametrize("debug,verbose,level", [
        (False, False, logging.WARNING),
        (False, True, logging.INFO),
        (True, False, logging.DEBUG),
        (True, True, logging.DEBUG),
    ])
    def test_levels(self, debug, verbose, level):
        """Test that debug wins over verbose."""
        configure_logging(debug, verbose)
        assert logging.getLogger("iobind").level == level


class TestContextHelpers:
    """Test access to the command group's context object."""

    def test_defaults_without_context(self):
        """Test fallbacks when no group context exists."""
        assert isinstance(get_settings(None), Settings)
        assert is_debug(None) is False

    def test_values_from_context(self, settings):
        """Test that values stored by the group are returned."""
        ctx = click.Context(click.Command("x"), obj={"settings": settings, "debug": True})
        assert get_settings(ctx) is settings
        assert is_debug(ctx) is True

    def test_echo_journal(self, capsys):
        """Test journal rendering."""
        result = RunResult(
            state=RunState.COMMITTED,
            journal=[JournalEntry(ActionKind.REBIND, "0000:02:02.0", "e1000")],
        )
        echo_journal(result)
        assert "(rebind, 0000:02:02.0, e1000)" in capsys.readouterr().out
