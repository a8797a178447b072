"""
Tests for the config loader — provision.yml parsing and env overrides.
"""

import textwrap
from pathlib import Path

import pytest

from provisioner.core.config.loader import apply_env_overrides, find_config_file, load_config
from provisioner.core.errors import ConfigError


class TestFindConfigFile:
    def test_finds_in_current_dir(self, tmp_path: Path):
        (tmp_path / "provision.yml").write_text("workflow: x\n")
        assert find_config_file(tmp_path) == tmp_path / "provision.yml"

    def test_finds_in_parent(self, tmp_path: Path):
        (tmp_path / "provision.yml").write_text("workflow: x\n")
        child = tmp_path / "a" / "b"
        child.mkdir(parents=True)
        assert find_config_file(child) == tmp_path / "provision.yml"

    def test_returns_none_when_absent(self, tmp_path: Path):
        assert find_config_file(tmp_path) is None


class TestLoadConfig:
    def test_defaults_without_file(self):
        cfg = load_config(environ={}, search=False)
        assert cfg.workflow == "provisioner"
        assert cfg.webui_port == 3000
        assert cfg.runtime_group == "docker"

    def test_load_file(self, tmp_path: Path):
        path = tmp_path / "provision.yml"
        path.write_text(textwrap.dedent("""\
            workflow: lab
            webui_port: 8080
            health_attempts: 5
            packages:
              prerequisites:
                name: prerequisites
                packages: [curl]
        """))
        cfg = load_config(path, environ={})
        assert cfg.workflow == "lab"
        assert cfg.webui_port == 8080
        assert cfg.health_attempts == 5
        assert cfg.packages.prerequisites.packages == ["curl"]
        # untouched sets keep their defaults
        assert "docker-ce" in cfg.packages.docker.packages

    def test_wrapped_under_provision_key(self, tmp_path: Path):
        path = tmp_path / "provision.yml"
        path.write_text("provision:\n  workflow: wrapped\n")
        assert load_config(path, environ={}).workflow == "wrapped"

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "provision.yml"
        path.write_text("")
        assert load_config(path, environ={}).workflow == "provisioner"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yml", environ={})

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "provision.yml"
        path.write_text("workflow: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path, environ={})

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "provision.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path, environ={})

    def test_schema_violation(self, tmp_path: Path):
        path = tmp_path / "provision.yml"
        path.write_text("health_attempts: 0\n")
        with pytest.raises(ConfigError, match="Invalid provision configuration"):
            load_config(path, environ={})

    def test_port_out_of_range(self):
        with pytest.raises(ConfigError, match="out of range"):
            load_config(environ={"OPEN_WEBUI_PORT": "70000"}, search=False)


class TestEnvOverrides:
    def test_overrides_applied(self):
        cfg = load_config(
            environ={
                "PROVISION_TARGET_USER": "carol",
                "PROVISION_LOG_DIR": "/tmp/logs",
                "OPEN_WEBUI_PORT": "4000",
            },
            search=False,
        )
        assert cfg.target_user == "carol"
        assert cfg.log_dir == "/tmp/logs"
        assert cfg.container_specs()[1].ports[0].host == 4000

    def test_env_beats_file(self, tmp_path: Path):
        path = tmp_path / "provision.yml"
        path.write_text("target_user: alice\n")
        cfg = load_config(path, environ={"PROVISION_TARGET_USER": "bob"})
        assert cfg.target_user == "bob"

    def test_blank_values_ignored(self):
        assert apply_env_overrides({"target_user": "a"}, {"PROVISION_TARGET_USER": "  "}) == {"target_user": "a"}

    def test_bad_port(self):
        with pytest.raises(ConfigError, match="OPEN_WEBUI_PORT"):
            apply_env_overrides({}, {"OPEN_WEBUI_PORT": "http"})


class TestExplicitContainers:
    CONTAINERS = textwrap.dedent("""\
        containers:
          - name: ollama
            image: ollama/ollama
            ports: [{host: 11434, container: 11434}]
          - name: open-webui
            image: ghcr.io/open-webui/open-webui:main
            ports: [{host: 3000, container: 8080}]
            depends_on: [ollama]
    """)

    def _write(self, tmp_path: Path, text: str) -> Path:
        path = tmp_path / "provision.yml"
        path.write_text(text)
        return path

    def test_env_port_publishes_frontend(self, tmp_path: Path):
        path = self._write(tmp_path, self.CONTAINERS)
        cfg = load_config(path, environ={"OPEN_WEBUI_PORT": "4000"})
        by_name = {s.name: s for s in cfg.container_specs()}
        assert by_name["open-webui"].ports[0].host == 4000
        assert by_name["open-webui"].ports[0].container == 8080
        assert by_name["ollama"].ports[0].host == 11434

    def test_file_port_publishes_frontend(self, tmp_path: Path):
        path = self._write(tmp_path, "webui_port: 8081\n" + self.CONTAINERS)
        cfg = load_config(path, environ={})
        assert cfg.container_specs()[1].ports[0].host == 8081

    def test_listed_port_kept_without_override(self, tmp_path: Path):
        path = self._write(tmp_path, self.CONTAINERS.replace("host: 3000", "host: 3300"))
        cfg = load_config(path, environ={})
        assert cfg.container_specs()[1].ports[0].host == 3300

    def test_override_without_frontend_rejected(self, tmp_path: Path):
        path = self._write(tmp_path, "containers:\n  - name: redis\n    image: redis\n")
        with pytest.raises(ConfigError, match="no container is named 'open-webui'"):
            load_config(path, environ={"OPEN_WEBUI_PORT": "4000"})

    def test_frontend_can_be_renamed(self, tmp_path: Path):
        path = self._write(
            tmp_path,
            "frontend: web\ncontainers:\n  - name: web\n    image: nginx\n"
            "    ports: [{host: 80, container: 80}]\n",
        )
        cfg = load_config(path, environ={"OPEN_WEBUI_PORT": "8088"})
        assert cfg.container_specs()[0].ports[0].host == 8088

    def test_frontend_without_ports_rejected(self, tmp_path: Path):
        path = self._write(tmp_path, "containers:\n  - name: open-webui\n    image: x\n")
        with pytest.raises(ConfigError, match="publishes no port"):
            load_config(path, environ={"OPEN_WEBUI_PORT": "4000"})
