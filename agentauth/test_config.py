# agentauth/test_config.py
import json

import pytest

from agentauth.backends import DEFAULT_MAX_BODY_BYTES, BackendEntry, BackendTable
from agentauth.config import ConfigError, ProxyConfig, Settings, load_config


def _write(tmp_path, data) -> str:
    path = tmp_path / "agentauth.json"
    path.write_text(data if isinstance(data, str) else json.dumps(data))
    return str(path)


def _backend(**overrides):
    base = {"target": "https://api.example.com", "headers": {"x-api-key": "abc"}}
    base.update(overrides)
    return base


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------

class TestLoadConfig:
    def test_reads_valid_json(self, tmp_path):
        path = _write(tmp_path, {
            "port": 8888,
            "backends": {"api": _backend(allowedPaths=["/v1/*"], maxBodyBytes=2048)},
        })
        config = load_config(path, environ={})
        assert config.port == 8888
        backend = config.backends["api"]
        assert backend.target == "https://api.example.com"
        assert backend.headers == {"x-api-key": "abc"}
        assert backend.allowed_paths == ["/v1/*"]
        assert backend.max_body_bytes == 2048

    def test_defaults_port_and_bind(self, tmp_path):
        config = load_config(_write(tmp_path, {"backends": {"api": _backend()}}), environ={})
        assert config.port == 9999
        assert config.bind == "127.0.0.1"
        assert config.audit_log is None

    def test_resolves_env_var_in_headers(self, tmp_path):
        path = _write(tmp_path, {"backends": {"api": _backend(headers={"x-api-key": "$MY_KEY"})}})
        config = load_config(path, environ={"MY_KEY": "resolved-secret"})
        assert config.backends["api"].headers["x-api-key"] == "resolved-secret"

    def test_reads_process_environment_by_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENTAUTH_TEST_TOKEN", "from-process")
        path = _write(tmp_path, {"backends": {"api": _backend(headers={"auth": "$AGENTAUTH_TEST_TOKEN"})}})
        assert load_config(path).backends["api"].headers["auth"] == "from-process"

    def test_missing_env_var_raises(self, tmp_path):
        path = _write(tmp_path, {"backends": {"api": _backend(headers={"x-api-key": "$NOPE"})}})
        with pytest.raises(ConfigError, match=r"\$NOPE"):
            load_config(path, environ={})

    def test_empty_env_var_raises(self, tmp_path):
        path = _write(tmp_path, {"backends": {"api": _backend(headers={"x-api-key": "$EMPTY"})}})
        with pytest.raises(ConfigError):
            load_config(path, environ={"EMPTY": ""})

    def test_empty_backends_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="at least one backend"):
            load_config(_write(tmp_path, {"backends": {}}), environ={})

    def test_missing_backends_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="backends"):
            load_config(_write(tmp_path, {"port": 1}), environ={})

    def test_missing_target_raises(self, tmp_path):
        path = _write(tmp_path, {"backends": {"api": {"headers": {}}}})
        with pytest.raises(ConfigError):
            load_config(path, environ={})

    def test_blank_target_raises(self, tmp_path):
        path = _write(tmp_path, {"backends": {"api": _backend(target="  ")}})
        with pytest.raises(ConfigError):
            load_config(path, environ={})

    def test_invalid_json_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="not valid JSON"):
            load_config(_write(tmp_path, "{not json"), environ={})

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read config"):
            load_config(tmp_path / "missing.json", environ={})


class TestSettings:
    def test_defaults(self, monkeypatch):
        for var in ("AGENTAUTH_PORT", "AGENTAUTH_BIND", "AGENTAUTH_CONFIG_PATH"):
            monkeypatch.delenv(var, raising=False)
        s = Settings(_env_file=None)
        assert s.config_path == "agentauth.json"
        assert s.port is None
        assert s.upstream_timeout is None

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("AGENTAUTH_PORT", "9400")
        monkeypatch.setenv("AGENTAUTH_AUDIT_LOG", "/tmp/audit.log")
        s = Settings(_env_file=None)
        assert s.port == 9400
        assert s.audit_log == "/tmp/audit.log"


# ---------------------------------------------------------------------------
# BackendEntry / BackendTable
# ---------------------------------------------------------------------------

class TestBackendEntry:
    def test_defaults(self):
        entry = BackendEntry(name="api", target_origin="https://api.example.com")
        assert entry.max_body_bytes == DEFAULT_MAX_BODY_BYTES == 10_485_760
        assert entry.allowed_path_patterns == ()
        assert dict(entry.injected_headers) == {}

    def test_header_names_lowercased(self):
        entry = BackendEntry(
            name="api", target_origin="https://api.example.com", injected_headers={"X-Api-Key": "k"}
        )
        assert dict(entry.injected_headers) == {"x-api-key": "k"}

    def test_headers_read_only(self):
        entry = BackendEntry(
            name="api", target_origin="https://api.example.com", injected_headers={"a": "b"}
        )
        with pytest.raises(TypeError):
            entry.injected_headers["a"] = "c"

    def test_trailing_slash_stripped(self):
        entry = BackendEntry(name="api", target_origin="http://localhost:8080/")
        assert entry.target_origin == "http://localhost:8080"

    @pytest.mark.parametrize("origin", [
        "",
        "api.example.com",
        "ftp://files.example.com",
        "https://api.example.com/v1",
        "https://api.example.com?x=1",
    ])
    def test_invalid_origin_rejected(self, origin):
        with pytest.raises(ValueError):
            BackendEntry(name="api", target_origin=origin)

    @pytest.mark.parametrize("name", ["", "a/b"])
    def test_invalid_name_rejected(self, name):
        with pytest.raises(ValueError):
            BackendEntry(name=name, target_origin="https://api.example.com")

    def test_non_positive_limit_rejected(self):
        with pytest.raises(ValueError):
            BackendEntry(name="api", target_origin="https://api.example.com", max_body_bytes=0)


class TestBackendTable:
    def _config(self, **backends):
        return ProxyConfig.model_validate({"backends": backends})

    def test_from_config(self):
        table = BackendTable.from_config(self._config(
            a={"target": "https://a.example.com", "allowedPaths": ["/x"], "maxBodyBytes": 5},
            b={"target": "https://b.example.com"},
        ))
        assert table.names() == ["a", "b"]
        assert "a" in table
        assert len(table) == 2
        assert table.get("a").allowed_path_patterns == ("/x",)
        assert table.get("a").max_body_bytes == 5
        assert table.get("b").max_body_bytes == DEFAULT_MAX_BODY_BYTES

    def test_unknown_returns_none(self):
        table = BackendTable.from_config(self._config(a={"target": "https://a.example.com"}))
        assert table.get("zzz") is None

    def test_invalid_backend_raises_config_error(self):
        with pytest.raises(ConfigError, match="a/b"):
            BackendTable.from_config(self._config(**{"a/b": {"target": "https://a.example.com"}}))

    def test_invalid_limit_raises_config_error(self):
        with pytest.raises(ConfigError):
            BackendTable.from_config(self._config(a={"target": "https://a.example.com", "maxBodyBytes": 0}))

    def test_duplicate_names_rejected(self):
        entry = BackendEntry(name="a", target_origin="https://a.example.com")
        with pytest.raises(ValueError, match="Duplicate"):
            BackendTable([entry, entry])
