"""Tests for atpar_sync.config_loader: hierarchical config loading."""

import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from atpar_sync.config_loader import (
    _interpolate_recursive,
    _load_yaml_with_includes,
    discover_config_files,
    ensure_config,
    interpolate_env_vars,
    load_hierarchical_config,
    resolve_config_path,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run in an empty CWD with a fake HOME and no config env var."""
    monkeypatch.delenv("ATPAR_SYNC_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "fakehome"))
    return tmp_path


def _project_config(root: Path, text: str) -> Path:
    path = root / ".atpar" / "config.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


# -------------------------------------------------------------------------
# Env var interpolation
# -------------------------------------------------------------------------


class TestInterpolateEnvVars:
    """Tests for ${VAR} and ${VAR:-default} substitution."""

    def test_replaces_set_var(self, monkeypatch):
        monkeypatch.setenv("ADO_PAT", "pat-123")
        assert interpolate_env_vars("${ADO_PAT}") == "pat-123"

    def test_unset_var_replaced_with_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert interpolate_env_vars("${UNSET_VAR_XYZ}") == ""

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert (
            interpolate_env_vars("${UNSET_VAR_XYZ:-fallback}") == "fallback"
        )

    def test_default_ignored_when_set(self, monkeypatch):
        monkeypatch.setenv("MY_PORT", "8080")
        assert interpolate_env_vars("${MY_PORT:-3000}") == "8080"

    def test_empty_env_var_uses_default(self, monkeypatch):
        monkeypatch.setenv("EMPTY_VAR", "")
        assert interpolate_env_vars("${EMPTY_VAR:-fallback}") == "fallback"

    def test_literal_dollar_brace_no_closing(self):
        assert interpolate_env_vars("${NO_CLOSE") == "${NO_CLOSE"

    def test_nested_structures_interpolated(self, monkeypatch):
        monkeypatch.setenv("NOTION_TOKEN", "secret_abc")
        data = {
            "teams": {
                "alpha": {"notion": {"credential": {"token": "${NOTION_TOKEN}"}}}
            },
            "tags": ["${NOTION_TOKEN}", 3],
            "enabled": True,
        }
        result = _interpolate_recursive(data)
        assert (
            result["teams"]["alpha"]["notion"]["credential"]["token"]
            == "secret_abc"
        )
        assert result["tags"] == ["secret_abc", 3]
        assert result["enabled"] is True


# -------------------------------------------------------------------------
# YAML !include support
# -------------------------------------------------------------------------


class TestIncludeDirective:
    """Tests for !include YAML loading via ConfigLoader subclass."""

    def test_include_relative_file(self, tmp_path):
        (tmp_path / "secrets.yml").write_text("token: secret123\n")
        main = tmp_path / "config.yml"
        main.write_text("credential: !include secrets.yml\n")

        assert _load_yaml_with_includes(main) == {
            "credential": {"token": "secret123"}
        }

    def test_include_nonexistent_raises(self, tmp_path):
        main = tmp_path / "config.yml"
        main.write_text("data: !include missing.yml\n")

        with pytest.raises(FileNotFoundError, match="missing.yml"):
            _load_yaml_with_includes(main)

    def test_circular_include_raises(self, tmp_path):
        (tmp_path / "a.yml").write_text("x: !include b.yml\n")
        (tmp_path / "b.yml").write_text("y: !include a.yml\n")

        with pytest.raises(ValueError, match="Circular include"):
            _load_yaml_with_includes(tmp_path / "a.yml")

    def test_nested_includes(self, tmp_path):
        (tmp_path / "c.yml").write_text("val: deep\n")
        (tmp_path / "b.yml").write_text("inner: !include c.yml\n")
        (tmp_path / "a.yml").write_text("outer: !include b.yml\n")

        assert _load_yaml_with_includes(tmp_path / "a.yml") == {
            "outer": {"inner": {"val": "deep"}}
        }

    def test_global_safe_loader_not_polluted(self, tmp_path):
        """!include is NOT registered on yaml.SafeLoader."""
        cfg = tmp_path / "test.yml"
        cfg.write_text("x: !include other.yml\n")

        with pytest.raises(yaml.constructor.ConstructorError):
            with open(cfg) as fh:
                yaml.safe_load(fh)


# -------------------------------------------------------------------------
# Convention-based file discovery
# -------------------------------------------------------------------------


class TestDiscoverConfigFiles:
    """Tests for discover_config_files() precedence and filtering."""

    def test_env_var_takes_highest_precedence(self, isolated, monkeypatch):
        custom = isolated / "custom.yml"
        custom.write_text("service: {}\n")
        _project_config(isolated, "service: {}\n")
        monkeypatch.setenv("ATPAR_SYNC_CONFIG", str(custom))

        result = discover_config_files()
        assert result[0] == custom.resolve()
        assert len(result) == 2

    def test_project_before_global(self, isolated):
        proj = _project_config(isolated, "project: true\n")
        global_cfg = isolated / "fakehome" / ".config" / "atpar" / "config.yml"
        global_cfg.parent.mkdir(parents=True)
        global_cfg.write_text("global: true\n")

        result = discover_config_files()
        assert result.index(proj) < result.index(global_cfg)

    def test_empty_filesystem_returns_empty(self, isolated):
        assert discover_config_files() == []


# -------------------------------------------------------------------------
# Hierarchical merge
# -------------------------------------------------------------------------


class TestLoadHierarchicalConfig:
    """Tests for load_hierarchical_config() merge and interpolation."""

    def test_zero_config_returns_empty_dict(self, isolated):
        assert load_hierarchical_config() == {}

    def test_project_overrides_global_at_section_level(self, isolated):
        global_cfg = isolated / "fakehome" / ".config" / "atpar" / "config.yml"
        global_cfg.parent.mkdir(parents=True)
        global_cfg.write_text(
            textwrap.dedent("""\
            service:
              state_dir: /global/state
              run_timeout_seconds: 300
            retry:
              max_attempts: 5
            """)
        )
        _project_config(
            isolated,
            """\
            service:
              state_dir: /project/state
            """,
        )

        result = load_hierarchical_config()
        assert result["service"] == {"state_dir": "/project/state"}
        assert result["retry"]["max_attempts"] == 5

    def test_teams_merged_per_team_id(self, isolated):
        global_cfg = isolated / "fakehome" / ".config" / "atpar" / "config.yml"
        global_cfg.parent.mkdir(parents=True)
        global_cfg.write_text(
            textwrap.dedent("""\
            teams:
              alpha: {direction: both}
              beta: {direction: both}
            """)
        )
        _project_config(
            isolated,
            """\
            teams:
              beta: {direction: ado-to-notion}
            """,
        )

        teams = load_hierarchical_config()["teams"]
        assert teams["alpha"] == {"direction": "both"}
        assert teams["beta"] == {"direction": "ado-to-notion"}

    def test_team_directory_files_loaded(self, isolated):
        _project_config(isolated, "teams:\n  alpha: {direction: both}\n")
        team_dir = isolated / ".atpar" / "teams.d"
        team_dir.mkdir()
        (team_dir / "gamma.yml").write_text("direction: notion-to-ado\n")
        (team_dir / "alpha.yml").write_text("direction: ado-to-notion\n")
        (team_dir / "broken.yml").write_text("- not\n- a dict\n")

        teams = load_hierarchical_config()["teams"]
        assert teams["gamma"] == {"direction": "notion-to-ado"}
        assert teams["alpha"] == {"direction": "ado-to-notion"}
        assert "broken" not in teams

    def test_env_var_interpolation_after_merge(self, isolated, monkeypatch):
        monkeypatch.setenv("ADO_PAT", "pat-xyz")
        _project_config(
            isolated,
            """\
            teams:
              alpha:
                ado:
                  credential: {kind: pat, token: "${ADO_PAT}"}
            """,
        )

        result = load_hierarchical_config()
        assert result["teams"]["alpha"]["ado"]["credential"]["token"] == "pat-xyz"

    def test_non_dict_root_skipped(self, isolated, monkeypatch):
        custom = isolated / "bad.yml"
        custom.write_text("- item1\n- item2\n")
        monkeypatch.setenv("ATPAR_SYNC_CONFIG", str(custom))

        assert load_hierarchical_config() == {}


# -------------------------------------------------------------------------
# Config bootstrapping
# -------------------------------------------------------------------------


class TestResolveConfigPath:
    """Tests for resolve_config_path(): determining the single config path."""

    def test_returns_highest_precedence(self):
        project_path = Path("/project/.atpar/config.yml")
        global_path = Path("/home/user/.config/atpar/config.yml")

        with patch(
            "atpar_sync.config_loader.discover_config_files",
            return_value=[project_path, global_path],
        ):
            assert resolve_config_path() == project_path

    def test_returns_default_when_no_files(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        with patch(
            "atpar_sync.config_loader.discover_config_files",
            return_value=[],
        ):
            assert resolve_config_path() == tmp_path / ".atpar" / "config.yml"


class TestEnsureConfig:
    """Tests for ensure_config(): bootstrapping config files."""

    def test_noop_when_exists(self, tmp_path):
        existing_path = Path("/fake/existing/config.yml")

        with patch(
            "atpar_sync.config_loader.discover_config_files",
            return_value=[existing_path],
        ):
            assert ensure_config() == existing_path
        assert not (tmp_path / ".atpar").exists()

    def test_creates_directory_and_starter_file(self, tmp_path):
        target = tmp_path / "a" / "b" / "config.yml"

        with patch(
            "atpar_sync.config_loader.discover_config_files",
            return_value=[],
        ):
            result = ensure_config(target=target)

        assert result == target
        content = target.read_text()
        assert "# atpar-sync configuration" in content
        assert "# teams:" in content
        assert "# logging:" in content

    def test_starter_file_is_valid_yaml(self, tmp_path):
        target = tmp_path / "config.yml"

        with patch(
            "atpar_sync.config_loader.discover_config_files",
            return_value=[],
        ):
            ensure_config(target=target)

        assert yaml.safe_load(target.read_text()) is None
