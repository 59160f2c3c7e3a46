"""Application settings and logging setup."""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    agent_name: str = ""
    rpc_url: str = ""
    private_key: str = ""
    chain_id: int = 747
    polling_interval_s: float | None = Field(default=None, gt=0.0)
    loop_interval_s: float = Field(default=5.0, gt=0.0)
    loop_error_interval_s: float = Field(default=10.0, gt=0.0)
    decision_mode: str = "rule_based"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=8.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""
    durable_url: str = ""
    memory_ttl_s: int = Field(default=60 * 60 * 24 * 7, ge=1)
    chroma_host: str = ""
    log_level: str = ""
    log_file: str = ""

    model_config = SettingsConfigDict(
        env_prefix="CHAIN_AGENT_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_agent_name(self) -> str:
        return self.agent_name or os.getenv("AGENT_NAME", "") or "chain-agent"

    def resolved_rpc_url(self) -> str:
        return self.rpc_url or os.getenv("FLOW_RPC_URL", "")

    def resolved_private_key(self) -> str:
        return self.private_key or os.getenv("PRIVATE_KEY", "")

    def resolved_polling_interval_s(self) -> float:
        if self.polling_interval_s is not None:
            return self.polling_interval_s
        # Legacy variable is expressed in milliseconds.
        raw_ms = os.getenv("POLLING_INTERVAL", "")
        try:
            value_ms = float(raw_ms)
        except ValueError:
            return 5.0
        return value_ms / 1000.0 if value_ms > 0 else 5.0

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_durable_url(self) -> str:
        return self.durable_url or os.getenv("REDIS_URL", "") or os.getenv("DATABASE_URL", "")

    def resolved_chroma_host(self) -> str:
        return self.chroma_host or os.getenv("CHROMA_HOST", "")

    def resolved_log_level(self) -> str:
        return (self.log_level or os.getenv("LOG_LEVEL", "") or "INFO").upper()

    def resolved_log_file(self) -> str:
        return self.log_file or os.getenv("LOG_FILE", "")

    def require_chain(self) -> None:
        """Fail fast when chain access is not configured."""
        rpc_url = self.resolved_rpc_url()
        if not rpc_url:
            raise RuntimeError("Missing required environment variable: FLOW_RPC_URL")
        private_key = self.resolved_private_key()
        if not private_key:
            raise RuntimeError("Missing required environment variable: PRIVATE_KEY")
        if not validate_rpc_url(rpc_url):
            raise RuntimeError(f"Invalid RPC URL (expected http or https): {rpc_url}")
        if not validate_private_key(private_key):
            raise RuntimeError("Invalid private key (expected 64 hex characters)")


def validate_rpc_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def validate_private_key(key: str) -> bool:
    clean_key = key[2:] if key.startswith("0x") else key
    return re.fullmatch(r"[0-9a-fA-F]{64}", clean_key) is not None


def configure_logging(settings: Settings) -> logging.Logger:
    """Install console (and optional file) handlers on the package logger."""
    package_logger = logging.getLogger("chain_agent")
    package_logger.setLevel(settings.resolved_log_level())
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(console)

    log_file = settings.resolved_log_file()
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(file_handler)
    return package_logger


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
