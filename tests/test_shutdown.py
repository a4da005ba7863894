"""Tests for datawallet.shutdown."""

from __future__ import annotations

import asyncio
import os
import signal

import pytest

from datawallet.shutdown import install_signal_handlers


class TestInstallSignalHandlers:
    @pytest.mark.asyncio
    async def test_sigterm_sets_event(self):
        event = asyncio.Event()
        install_signal_handlers(event)

        os.kill(os.getpid(), signal.SIGTERM)
        # the loop needs an I/O poll cycle to read the signal self-pipe
        await asyncio.sleep(0.05)
        assert event.is_set()

    @pytest.mark.asyncio
    async def test_repeated_signal_is_harmless(self):
        event = asyncio.Event()
        install_signal_handlers(event)

        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.sleep(0.05)
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.sleep(0.05)
        assert event.is_set()

    @pytest.mark.asyncio
    async def test_handlers_registered_for_both_signals(self):
        install_signal_handlers(asyncio.Event())
        loop = asyncio.get_running_loop()
        assert loop.remove_signal_handler(signal.SIGTERM) is True
        assert loop.remove_signal_handler(signal.SIGINT) is True
