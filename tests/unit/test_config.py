import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from vaultkeeper.config import LOG_FORMAT, Settings, configure_logging
from vaultkeeper.provider import ProviderKind


class TestSettingsFromEnv:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.provider is ProviderKind.CLAUDE
        assert settings.resolved_model == "claude-sonnet-4-5"
        assert settings.api_key == ""
        assert not settings.allow_destructive_actions
        assert settings.max_turns == 50
        assert settings.conversations_path == Path(".") / "Vault AI" / "Conversations"

    def test_environment(self):
        settings = Settings.from_env({
            "VAULTKEEPER_PROVIDER": " Gemini ",
            "VAULTKEEPER_MODEL": "gemini-x",
            "VAULTKEEPER_VAULT": "/notes",
            "VAULTKEEPER_EXCLUSIONS": "private/**, *.secret.md\narchive/",
            "VAULTKEEPER_ALLOW_DESTRUCTIVE": "yes",
            "VAULTKEEPER_MAX_TURNS": "7",
            "GEMINI_API_KEY": "g-key",
            "ANTHROPIC_API_KEY": "not-this-one",
        })

        assert settings.provider is ProviderKind.GEMINI
        assert settings.resolved_model == "gemini-x"
        assert settings.vault_path == Path("/notes")
        assert settings.exclusions == ["private/**", "*.secret.md", "archive/"]
        assert settings.allow_destructive_actions
        assert settings.max_turns == 7
        assert settings.api_key == "g-key"

    def test_overrides_win(self):
        settings = Settings.from_env(
            {"VAULTKEEPER_PROVIDER": "claude", "OPENAI_API_KEY": "o-key"},
            provider="openai",
            model=None,
            max_turns=3,
        )
        assert settings.provider is ProviderKind.OPENAI
        assert settings.resolved_model == "gpt-5"
        assert settings.api_key == "o-key"
        assert settings.max_turns == 3

    def test_explicit_conversations_dir(self):
        settings = Settings(conversations_dir=Path("/tmp/chats"))
        assert settings.conversations_path == Path("/tmp/chats")

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            Settings.from_env({"VAULTKEEPER_MAX_TURNS": "0"})
        with pytest.raises(ValueError):
            Settings.from_env({"VAULTKEEPER_PROVIDER": "mistral"})


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_file_and_stream_handlers(self, tmp_path):
        log_file = tmp_path / "vk.log"
        configure_logging(logging.DEBUG, str(log_file))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        kinds = [type(h) for h in root.handlers]
        assert logging.FileHandler in kinds
        assert logging.StreamHandler in kinds
        assert root.handlers[0].formatter._fmt == LOG_FORMAT

        logging.getLogger("vaultkeeper.test").info("hello")
        assert "vaultkeeper.test:INFO:hello" in log_file.read_text()

    def test_stream_only(self):
        configure_logging(log_file=None)
        assert [type(h) for h in logging.getLogger().handlers] == [logging.StreamHandler]
