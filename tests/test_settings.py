from __future__ import annotations

import logging

import pytest

from chain_agent.app.settings import (
    Settings,
    configure_logging,
    validate_private_key,
    validate_rpc_url,
)

VALID_KEY = "0x" + "ab" * 32
FALLBACK_VARS = (
    "AGENT_NAME",
    "FLOW_RPC_URL",
    "PRIVATE_KEY",
    "POLLING_INTERVAL",
    "OPENAI_API_KEY",
    "REDIS_URL",
    "DATABASE_URL",
    "CHROMA_HOST",
    "LOG_LEVEL",
    "LOG_FILE",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in FALLBACK_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults(clean_env) -> None:
    settings = _settings()

    assert settings.resolved_agent_name() == "chain-agent"
    assert settings.chain_id == 747
    assert settings.resolved_polling_interval_s() == 5.0
    assert settings.memory_ttl_s == 604800
    assert settings.resolved_durable_url() == ""
    assert settings.resolved_log_level() == "INFO"


def test_prefixed_env_wins_over_legacy_names(clean_env) -> None:
    clean_env.setenv("CHAIN_AGENT_RPC_URL", "https://primary.example")
    clean_env.setenv("FLOW_RPC_URL", "https://legacy.example")

    assert _settings().resolved_rpc_url() == "https://primary.example"


def test_legacy_env_fallbacks(clean_env) -> None:
    clean_env.setenv("AGENT_NAME", "watcher")
    clean_env.setenv("POLLING_INTERVAL", "2500")
    clean_env.setenv("DATABASE_URL", "postgresql://localhost/agent")
    clean_env.setenv("CHROMA_HOST", "http://chroma:8000")
    clean_env.setenv("LOG_LEVEL", "debug")

    settings = _settings()
    assert settings.resolved_agent_name() == "watcher"
    assert settings.resolved_polling_interval_s() == 2.5
    assert settings.resolved_durable_url() == "postgresql://localhost/agent"
    assert settings.resolved_chroma_host() == "http://chroma:8000"
    assert settings.resolved_log_level() == "DEBUG"

    clean_env.setenv("REDIS_URL", "redis://localhost:6379/0")
    assert _settings().resolved_durable_url() == "redis://localhost:6379/0"


def test_require_chain_names_missing_variable(clean_env) -> None:
    with pytest.raises(RuntimeError, match="FLOW_RPC_URL"):
        _settings().require_chain()
    with pytest.raises(RuntimeError, match="PRIVATE_KEY"):
        _settings(rpc_url="https://rpc.example").require_chain()
    with pytest.raises(RuntimeError, match="Invalid RPC URL"):
        _settings(rpc_url="ws://rpc.example", private_key=VALID_KEY).require_chain()

    _settings(rpc_url="https://rpc.example", private_key=VALID_KEY).require_chain()


def test_validators() -> None:
    assert validate_rpc_url("https://mainnet.evm.nodes.onflow.org") is True
    assert validate_rpc_url("not a url") is False
    assert validate_private_key(VALID_KEY) is True
    assert validate_private_key(VALID_KEY[2:]) is True
    assert validate_private_key("0x1234") is False


def test_configure_logging_installs_file_handler(clean_env, tmp_path) -> None:
    log_file = tmp_path / "logs" / "agent.log"
    package_logger = configure_logging(_settings(log_level="warning", log_file=str(log_file)))
    try:
        assert package_logger.level == logging.WARNING
        assert len(package_logger.handlers) == 2
        assert log_file.parent.exists()
    finally:
        for handler in list(package_logger.handlers):
            handler.close()
            package_logger.removeHandler(handler)
