"""Tests for configuration schema and loader."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from nexustransfer.config import Config, load_config
from nexustransfer.config.loader import get_config_path
from nexustransfer.config.schema import TransferConfig
from nexustransfer.lan.discovery import SERVICE_ID
from nexustransfer.lan.transfer import CHUNK_SIZE


class TestDefaults:
    def test_defaults(self):
        config = Config()
        assert config.transport.tcp_port == 9876
        assert config.transport.connect_timeout is None
        assert config.discovery.service_id == SERVICE_ID
        assert config.discovery.udp_port == 9877
        assert config.transfer.chunk_size == CHUNK_SIZE
        assert config.transfer.download_dir == "downloads"
        assert config.transfer.auto_accept is True
        assert config.log_level == "INFO"

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            TransferConfig(chunk_size=0)

    def test_download_path_expands_user(self):
        cfg = TransferConfig(download_dir="~/incoming")
        assert cfg.download_path == Path.home() / "incoming"


class TestLoader:
    def test_default_path(self):
        assert get_config_path() == Path.home() / ".nexustransfer" / "config.json"

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.json")
        assert config.transport.tcp_port == 9876

    def test_camel_case_keys(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "node_name": "alice",
            "transport": {"tcpPort": 5000, "connectTimeout": 2.5},
            "transfer": {"downloadDir": "/tmp/in", "autoAccept": False},
            "discovery": {"peerTimeout": 30},
        }))
        config = load_config(path)
        assert config.node_name == "alice"
        assert config.transport.tcp_port == 5000
        assert config.transport.connect_timeout == 2.5
        assert config.transfer.download_dir == "/tmp/in"
        assert config.transfer.auto_accept is False
        assert config.discovery.peer_timeout == 30

    def test_snake_case_keys(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"node_name": "bob", "transfer": {"chunk_size": 1024}}))
        config = load_config(path)
        assert config.node_name == "bob"
        assert config.transfer.chunk_size == 1024

    def test_invalid_file_falls_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert load_config(path).transport.tcp_port == 9876

    def test_invalid_values_fall_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"transfer": {"chunkSize": -1}}))
        assert load_config(path).transfer.chunk_size == CHUNK_SIZE


class TestEnvironment:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("NEXUS_NODE_NAME", "from-env")
        monkeypatch.setenv("NEXUS_TRANSPORT__TCP_PORT", "7000")
        config = Config()
        assert config.node_name == "from-env"
        assert config.transport.tcp_port == 7000


class TestNodeId:
    def test_valid_node_id_is_normalised(self):
        config = Config(node_id="12345678123456781234567812345678")
        assert config.node_id == "12345678-1234-5678-1234-567812345678"

    def test_empty_node_id_allowed(self):
        assert Config(node_id="").node_id == ""

    def test_malformed_node_id_rejected(self):
        with pytest.raises(ValidationError, match="node_id"):
            Config(node_id="not-a-uuid")

    def test_malformed_node_id_in_file_falls_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"node_id": "nope", "node_name": "alice"}))
        config = load_config(path)
        assert config.node_id == ""
        assert config.node_name == ""

    def test_malformed_node_id_in_env_exits_cleanly(self, monkeypatch, tmp_path):
        from nexustransfer.__main__ import main

        monkeypatch.setenv("NEXUS_NODE_ID", "nope")
        assert main(["--config", str(tmp_path / "absent.json")]) == 2
