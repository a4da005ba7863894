"""Tests for datawallet.config."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from datawallet.config import (
    MIB,
    AuthorizationConfig,
    CostConfig,
    ImapConfig,
    LedgerConfig,
    LedgerMode,
    PolicyMode,
    ServiceConfig,
    ValidationConfig,
)


class TestImapConfig:
    def test_defaults(self):
        cfg = ImapConfig()
        assert cfg.port == 993
        assert cfg.use_ssl is True
        assert cfg.mailbox == "INBOX"
        assert cfg.poll_interval_seconds == 60.0

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("IMAP_HOST", "mail.example.com")
        monkeypatch.setenv("IMAP_PASSWORD", "hunter2")
        monkeypatch.setenv("IMAP_USE_SSL", "false")
        cfg = ImapConfig()
        assert cfg.host == "mail.example.com"
        assert cfg.use_ssl is False
        assert cfg.password.get_secret_value() == "hunter2"
        assert "hunter2" not in repr(cfg)


class TestValidationConfig:
    def test_defaults(self):
        cfg = ValidationConfig()
        assert cfg.max_message_bytes == 25 * MIB
        assert cfg.max_attachment_count == 10
        assert ".pdf" in cfg.allowed_extensions
        assert cfg.allow_list_policy == PolicyMode.ENFORCED

    def test_list_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("VALIDATION_ALLOWED_EXTENSIONS", '[".pdf", ".csv"]')
        monkeypatch.setenv("VALIDATION_ALLOW_LIST_POLICY", "allow_all_for_testing")
        cfg = ValidationConfig()
        assert cfg.allowed_extensions == [".pdf", ".csv"]
        assert cfg.allow_list_policy == PolicyMode.ALLOW_ALL_FOR_TESTING


class TestCostConfig:
    def test_defaults(self):
        cfg = CostConfig()
        assert (cfg.email_credits, cfg.authorization_credits, cfg.attachment_credits) == (3, 1, 2)
        assert cfg.size_credit_bytes == MIB


class TestAuthorizationConfig:
    def test_enforced_requires_secret(self):
        with pytest.raises(ValidationError, match="AUTH_SIGNING_SECRET"):
            AuthorizationConfig()

    def test_secret_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("AUTH_SIGNING_SECRET", "s3cret")
        cfg = AuthorizationConfig()
        assert cfg.signing_secret is not None
        assert cfg.signing_secret.get_secret_value() == "s3cret"
        assert cfg.window_hours == 24.0

    def test_testing_policy_needs_no_secret(self):
        cfg = AuthorizationConfig(signature_policy=PolicyMode.ALLOW_ALL_FOR_TESTING)
        assert cfg.signing_secret is None
        assert cfg.min_signature_length == 11


class TestLedgerConfig:
    def test_simulated_by_default(self):
        cfg = LedgerConfig()
        assert cfg.mode == LedgerMode.SIMULATED
        assert cfg.network == "polygon-amoy"
        assert cfg.chain_id == 80002

    def test_real_mode_lists_missing_settings(self):
        with pytest.raises(ValidationError, match="rpc_url, contract_address, sender_address, schema_path"):
            LedgerConfig(mode=LedgerMode.REAL)

    def test_real_mode_complete(self):
        cfg = LedgerConfig(
            mode="real",
            rpc_url="https://rpc.test",
            contract_address="0x" + "11" * 20,
            sender_address="0x" + "22" * 20,
            schema_path="/etc/datawallet/schema.json",
        )
        assert cfg.mode == LedgerMode.REAL


class TestServiceConfig:
    def test_nested_configs_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("AUTH_SIGNING_SECRET", "s3cret")
        monkeypatch.setenv("DATAWALLET_API_PORT", "9090")
        monkeypatch.setenv("WORKER_FINALIZE_WORKERS", "8")
        monkeypatch.setenv("LEDGER_NETWORK", "polygon-mainnet")
        cfg = ServiceConfig()
        assert cfg.name == "email-data-wallet"
        assert cfg.api_port == 9090
        assert cfg.worker.finalize_workers == 8
        assert cfg.ledger.network == "polygon-mainnet"
        assert cfg.poll_enabled is True

    def test_fixture(self, service_config: ServiceConfig):
        assert service_config.name == "datawallet-test"
        assert service_config.imap.host == "imap.test.com"
        assert service_config.notifier.webhook_url is None
