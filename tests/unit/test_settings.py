"""
Unit tests for environment-driven settings.
"""

import pytest

from shared.config.settings import BlockchainMode, BlockchainSettings, Settings, TrusteeSettings


class TestSettings:
    """Tests for nested settings groups."""

    def test_blockchain_group_is_mode_only(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the ledger group exposes only the mode that selects the client."""
        monkeypatch.setenv("BLOCKCHAIN_MODE", "testnet")

        blockchain = BlockchainSettings()

        assert blockchain.mode == BlockchainMode.TESTNET
        assert set(BlockchainSettings.model_fields) == {"mode"}

    def test_trustee_token_is_secret(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the trustee token loads from the environment and stays out of repr."""
        monkeypatch.setenv("TRUSTEE_AUTH_TOKEN", "escrow-to-trustee")

        trustee = TrusteeSettings()

        assert trustee.auth_token.get_secret_value() == "escrow-to-trustee"
        assert "escrow-to-trustee" not in repr(trustee)

    def test_trustee_token_defaults_to_off(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TRUSTEE_AUTH_TOKEN", raising=False)

        assert TrusteeSettings().auth_token.get_secret_value() == ""

    def test_endpoint_map(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test endpoints are numbered trustee_1..trustee_n in order."""
        monkeypatch.setenv("TRUSTEE_ENDPOINTS", "http://a:1/, http://b:2")

        assert TrusteeSettings().endpoint_map == {"trustee_1": "http://a:1", "trustee_2": "http://b:2"}

    def test_log_level_is_uppercased(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "debug")

        assert Settings().log_level.value == "DEBUG"
