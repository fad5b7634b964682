"""Tests for ~/.secflow/configuration.json helpers."""

import json

import pytest

from secflow import config


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "configuration.json"
    monkeypatch.setattr(config, "SECFLOW_CONFIG_FILE", path)
    monkeypatch.delenv("SECFLOW_DOCKER_BIN", raising=False)
    monkeypatch.delenv("SECFLOW_HELPER_IMAGE", raising=False)
    return path


class TestSecflowConfig:
    def test_missing_file_gives_defaults(self, config_file):
        assert config.get_secflow_config() == {}
        assert config.get_docker_bin() == "docker"
        assert config.get_helper_image() == "alpine:latest"
        assert config.get_default_tenant() == "default-tenant"
        assert config.get_progress_queue_size() == 256
        assert config.get_http_timeout() == 30.0

    def test_invalid_json_is_ignored(self, config_file):
        config_file.write_text("{not json")
        assert config.get_secflow_config() == {}

    def test_values_from_file(self, config_file):
        config_file.write_text(
            json.dumps(
                {
                    "docker": {"bin": "/usr/local/bin/podman", "helper_image": "busybox:1"},
                    "tenant_id": "acme",
                    "progress": {"queue_size": 0},
                    "http": {"timeout": 5},
                }
            )
        )

        assert config.get_docker_bin() == "/usr/local/bin/podman"
        assert config.get_helper_image() == "busybox:1"
        assert config.get_default_tenant() == "acme"
        assert config.get_progress_queue_size() == 1
        assert config.get_http_timeout() == 5.0

    def test_environment_overrides_file(self, config_file, monkeypatch):
        config_file.write_text(json.dumps({"docker": {"bin": "from-file"}}))
        monkeypatch.setenv("SECFLOW_DOCKER_BIN", "from-env")
        monkeypatch.setenv("SECFLOW_HELPER_IMAGE", "helper:env")

        assert config.get_docker_bin() == "from-env"
        assert config.get_helper_image() == "helper:env"

    def test_file_is_read_on_every_call(self, config_file):
        config_file.write_text(json.dumps({"tenant_id": "first"}))
        assert config.get_default_tenant() == "first"

        config_file.write_text(json.dumps({"tenant_id": "second"}))
        assert config.get_default_tenant() == "second"
