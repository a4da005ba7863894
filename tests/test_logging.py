"""Tests for datawallet.logging."""

from __future__ import annotations

import logging

import structlog

from datawallet.logging import mask_token, setup_logging


class TestSetupLogging:
    def test_json_mode_installs_single_handler(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        setup_logging(json=True, level="INFO")
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_console_mode_level_case_insensitive(self):
        setup_logging(json=False, level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_httpx_quietened(self):
        setup_logging()
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_bound_context_reaches_output(self, capsys):
        setup_logging(json=True, level="INFO")
        logger = structlog.get_logger("datawallet.test")
        with structlog.contextvars.bound_contextvars(task_id="task_1_abcd"):
            logger.info("context_event")
        out = capsys.readouterr().out
        assert "context_event" in out
        assert "task_1_abcd" in out


class TestMaskToken:
    def test_long_token_truncated(self):
        assert mask_token("abcdefghijklmnop") == "abcdefgh..."

    def test_short_token_hidden(self):
        assert mask_token("abc") == "***"
