"""Tests for environment variable expansion."""

import pytest

from syncs.lib.env import expand_env_vars, expand_options, load_env_file
from syncs.lib.errors import ConfigurationError


class TestExpandEnvVars:
    """Tests for expand_env_vars."""

    def test_braced_and_bare(self, monkeypatch):
        """Both ${VAR} and $VAR are expanded."""
        monkeypatch.setenv("TEST_ORG", "acme")
        assert expand_env_vars("${TEST_ORG}/$TEST_ORG") == "acme/acme"

    def test_default(self, monkeypatch):
        """${VAR:-default} falls back to the default."""
        monkeypatch.delenv("TEST_REPO", raising=False)
        assert expand_env_vars("${TEST_REPO:-widgets}") == "widgets"

    def test_missing_lenient(self, monkeypatch):
        """Missing variables are left untouched when not strict."""
        monkeypatch.delenv("TEST_NOPE", raising=False)
        assert expand_env_vars("${TEST_NOPE}") == "${TEST_NOPE}"

    def test_missing_strict(self, monkeypatch):
        """Missing variables raise in strict mode."""
        monkeypatch.delenv("TEST_NOPE", raising=False)
        with pytest.raises(ConfigurationError) as exc_info:
            expand_env_vars("${TEST_NOPE}", strict=True)
        assert exc_info.value.field == "TEST_NOPE"


class TestExpandOptions:
    """Tests for expand_options."""

    def test_nested(self, monkeypatch):
        """Dicts and lists are expanded recursively; other values pass through."""
        monkeypatch.setenv("TEST_TOKEN", "abc")
        options = {"auth": {"token": "${TEST_TOKEN}"}, "partitions": ["$TEST_TOKEN"], "page_size": 100}
        assert expand_options(options) == {"auth": {"token": "abc"}, "partitions": ["abc"], "page_size": 100}


class TestLoadEnvFile:
    """Tests for load_env_file."""

    def test_loads_file(self, tmp_path, monkeypatch):
        """Variables from a .env file become visible."""
        monkeypatch.delenv("TEST_FROM_DOTENV", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("TEST_FROM_DOTENV=loaded\n")
        assert load_env_file(env_file) is True
        assert expand_env_vars("${TEST_FROM_DOTENV}") == "loaded"

    def test_does_not_override(self, tmp_path, monkeypatch):
        """Existing variables win unless override is set."""
        monkeypatch.setenv("TEST_FROM_DOTENV", "shell")
        env_file = tmp_path / ".env"
        env_file.write_text("TEST_FROM_DOTENV=file\n")
        load_env_file(env_file)
        assert expand_env_vars("${TEST_FROM_DOTENV}") == "shell"
