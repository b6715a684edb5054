"""Tests for environment-driven configuration."""

import os
from pathlib import Path

import pytest

from opswatch.config import Config


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Strip OPSWATCH_* variables and run from an empty directory (no .env)."""
    for name in list(os.environ):
        if name.startswith("OPSWATCH_") or name == "ANTHROPIC_API_KEY":
            monkeypatch.delenv(name)
    # load_dotenv writes os.environ directly; register these so teardown removes them.
    for name in ("OPSWATCH_MAX_TIER", "OPSWATCH_MEMORY_BUDGET"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestDefaults:

    def test_tier_models(self):
        config = Config()
        assert config.tier_model(1) == "haiku"
        assert config.tier_model(2) == "sonnet"
        assert config.tier_model(3) == "opus"

    def test_tier1_read_only(self):
        config = Config()
        assert "Write" not in config.allowed_tools(1)
        assert "Edit" not in config.allowed_tools(1)
        assert "Bash" in config.allowed_tools(1)
        assert "Write" in config.allowed_tools(2)

    def test_tier_bounds(self):
        config = Config()
        with pytest.raises(ValueError):
            config.tier_model(0)
        with pytest.raises(ValueError):
            config.allowed_tools(4)

    def test_paths(self, tmp_path):
        config = Config(state_dir=tmp_path)
        assert config.db_path == tmp_path / "opswatch.db"
        assert config.cooldown_path == tmp_path / "cooldown.json"
        assert config.results_dir == tmp_path / "results"

    def test_env_context(self, tmp_path):
        config = Config(state_dir=tmp_path, dry_run=True)
        ctx = config.env_context()
        assert ctx.startswith("OPSWATCH_DRY_RUN=true ")
        assert f"OPSWATCH_STATE_DIR={tmp_path}" in ctx
        assert "OPSWATCH_TIER2_MODEL=sonnet" in ctx
        assert "OPSWATCH_TIER3_MODEL=opus" in ctx
        assert "TIER1_MODEL" not in ctx


class TestFromEnv:

    def test_defaults(self, clean_env):
        config = Config.from_env()
        assert config.state_dir == Path(".opswatch")
        assert config.memory_budget == 2000
        assert config.dry_run is False
        assert config.anthropic_api_key is None

    def test_overrides(self, clean_env, tmp_path):
        clean_env.setenv("OPSWATCH_STATE_DIR", str(tmp_path / "s"))
        clean_env.setenv("OPSWATCH_TIER2_MODEL", "claude-sonnet-custom")
        clean_env.setenv("OPSWATCH_TIER1_TOOLS", "Read, Grep")
        clean_env.setenv("OPSWATCH_MEMORY_BUDGET", "500")
        clean_env.setenv("OPSWATCH_DRY_RUN", "yes")
        clean_env.setenv("ANTHROPIC_API_KEY", "sk-test")
        config = Config.from_env()
        assert config.state_dir == tmp_path / "s"
        assert config.tier_model(2) == "claude-sonnet-custom"
        assert config.allowed_tools(1) == ["Read", "Grep"]
        assert config.memory_budget == 500
        assert config.dry_run is True
        assert config.anthropic_api_key == "sk-test"

    def test_explicit_state_dir_wins(self, clean_env, tmp_path):
        clean_env.setenv("OPSWATCH_STATE_DIR", "/elsewhere")
        assert Config.from_env(state_dir=tmp_path).state_dir == tmp_path

    def test_dotenv_loaded(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("OPSWATCH_MAX_TIER=2\n")
        config = Config.from_env()
        assert config.max_tier == 2
        with pytest.raises(ValueError):
            config.tier_model(3)

    def test_environment_beats_dotenv(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("OPSWATCH_MEMORY_BUDGET=100\n")
        clean_env.setenv("OPSWATCH_MEMORY_BUDGET", "300")
        assert Config.from_env().memory_budget == 300
