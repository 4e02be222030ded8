"""
Tests for configuration loading.
"""

from pathlib import Path

import pytest

from device_dna.config import CollectorConfig, load_config
from device_dna.exceptions import ConfigurationError


class TestDefaults:

    def test_defaults(self):
        config = load_config()
        assert config.target_host == "localhost"
        assert config.winrm_port == 5985
        assert config.export_job_max_wait == 60
        assert config.large_export_job_max_wait == 90
        assert config.max_retries == 3
        assert config.probe_timeout is None
        assert config.output_dir == Path("output")
        assert config.skip == frozenset()
        assert config.is_local_target
        assert not config.remote_enabled


class TestSkipCategories:

    def test_normalized(self):
        config = load_config(skip_categories=" SCCM, group_policy ,,")
        assert config.skip == frozenset({"sccm", "group_policy"})

    def test_unknown_category_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown skip categories"):
            load_config(skip_categories="sccm,bogus")

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("DEVICEDNA_SKIP_CATEGORIES", "intune")
        config = CollectorConfig()
        assert config.skip == frozenset({"intune"})


class TestGraphCredentials:

    def test_remote_enabled_with_secret(self):
        config = load_config(tenant_id="contoso", client_id="app", client_secret="s")
        assert config.has_graph_credentials
        assert config.remote_enabled

    def test_remote_disabled_when_intune_skipped(self):
        config = load_config(
            tenant_id="contoso", client_id="app", client_secret="s", skip_categories="intune"
        )
        assert not config.remote_enabled

    def test_remote_enabled_with_access_token(self):
        config = load_config(tenant_id="contoso", access_token="abc")
        assert config.remote_enabled

    def test_secret_and_certificate_exclusive(self, tmp_path):
        with pytest.raises(ConfigurationError, match="either client_secret or certificate_path"):
            load_config(
                client_id="app", client_secret="s", certificate_path=tmp_path / "app.pem"
            )

    def test_secret_requires_client_id(self):
        with pytest.raises(ConfigurationError, match="client_id required"):
            load_config(client_secret="s")


class TestValidation:

    def test_export_wait_bounds(self):
        with pytest.raises(ConfigurationError):
            load_config(export_job_max_wait=5)
        assert load_config(export_job_max_wait=600).export_job_max_wait == 600

    def test_log_level_uppercased(self):
        assert load_config(log_level="debug").log_level == "DEBUG"

    def test_bad_log_level(self):
        with pytest.raises(ConfigurationError):
            load_config(log_level="chatty")

    def test_bad_transport(self):
        with pytest.raises(ConfigurationError):
            load_config(winrm_transport="telnet")

    def test_none_overrides_ignored(self, monkeypatch):
        """CLI options left unset do not mask environment values."""
        monkeypatch.setenv("DEVICEDNA_TARGET_HOST", "PC001")
        config = load_config(target_host=None)
        assert config.target_host == "PC001"
        assert not config.is_local_target

    def test_urls_trailing_slash_stripped(self):
        config = load_config(graph_base_url="https://graph.microsoft.com/v1.0/")
        assert config.graph_base_url == "https://graph.microsoft.com/v1.0"
