import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

from vaultkeeper.prompt import CONVERSATIONS_DIR
from vaultkeeper.provider import DEFAULT_MODELS, ProviderKind

LOG_FORMAT = "%(asctime)s:%(name)s:%(levelname)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

API_KEY_ENV: dict[ProviderKind, str] = {
    ProviderKind.CLAUDE: "ANTHROPIC_API_KEY",
    ProviderKind.OPENAI: "OPENAI_API_KEY",
    ProviderKind.GEMINI: "GEMINI_API_KEY",
}

_TRUE = {"1", "true", "yes", "on"}


def configure_logging(level: int = logging.INFO, log_file: str | None = "vaultkeeper.log") -> None:
    """Log to *log_file* and stderr. Called by the CLI, not on import."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )


class Settings(BaseModel):
    provider: ProviderKind = ProviderKind.CLAUDE
    model: str | None = None
    api_key: str = ""
    vault_path: Path = Path(".")
    conversations_dir: Path | None = None
    exclusions: list[str] = Field(default_factory=list)
    allow_destructive_actions: bool = False
    max_turns: int = Field(default=50, ge=1)
    request_timeout: float = 600.0

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.provider]

    @property
    def conversations_path(self) -> Path:
        if self.conversations_dir is not None:
            return self.conversations_dir
        return self.vault_path / CONVERSATIONS_DIR

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "Settings":
        """Build settings from ``VAULTKEEPER_*`` and provider key variables.

        Keyword arguments that are not ``None`` win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict = {}

        if env.get("VAULTKEEPER_PROVIDER"):
            values["provider"] = env["VAULTKEEPER_PROVIDER"].strip().lower()
        if env.get("VAULTKEEPER_MODEL"):
            values["model"] = env["VAULTKEEPER_MODEL"]
        if env.get("VAULTKEEPER_VAULT"):
            values["vault_path"] = env["VAULTKEEPER_VAULT"]
        if env.get("VAULTKEEPER_EXCLUSIONS"):
            values["exclusions"] = [
                e.strip() for e in env["VAULTKEEPER_EXCLUSIONS"].replace("\n", ",").split(",") if e.strip()
            ]
        if env.get("VAULTKEEPER_ALLOW_DESTRUCTIVE"):
            values["allow_destructive_actions"] = (
                env["VAULTKEEPER_ALLOW_DESTRUCTIVE"].strip().lower() in _TRUE
            )
        if env.get("VAULTKEEPER_MAX_TURNS"):
            values["max_turns"] = env["VAULTKEEPER_MAX_TURNS"]

        values.update({k: v for k, v in overrides.items() if v is not None})

        provider = ProviderKind(values.get("provider", ProviderKind.CLAUDE))
        if not values.get("api_key"):
            values["api_key"] = env.get(API_KEY_ENV[provider], "")
        return cls.model_validate(values)
