"""Tests for configuration sources and broker settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from relaybus.config.adapter import (
    ConfigAdapter,
    DotEnvConfigSource,
    EnvConfigSource,
    parse_dotenv,
)
from relaybus.config.settings import RedisConfig, load_broker_settings
from relaybus.contracts.types import BrokerType


class DictSource:
    def __init__(self, values: dict[str, str]) -> None:
        self.values = values

    def get(self, key: str) -> str | None:
        return self.values.get(key)


def _settings(**values: str):
    return load_broker_settings(ConfigAdapter((DictSource(values),)))


def test_defaults_disable_broker() -> None:
    settings = _settings()
    assert settings.broker_type is None
    assert settings.enabled is False
    assert settings.kafka.brokers == ["localhost:9092"]
    assert settings.kafka.topic == "agent-invocations"
    assert settings.kafka.dlq_topic == "agent-invocations-dlq"
    assert settings.rabbitmq.prefetch_count == 10
    assert settings.redis.stream == "agent-invocations"
    assert settings.redis.batch_size == 10
    assert settings.worker.concurrency == 10
    assert settings.worker.max_retries == 3
    assert settings.log_level == "INFO"


def test_broker_type_is_case_insensitive() -> None:
    assert _settings(MESSAGE_BROKER="Kafka").broker_type is BrokerType.KAFKA
    assert _settings(MESSAGE_BROKER=" redis ").broker_type is BrokerType.REDIS
    assert _settings(MESSAGE_BROKER="").broker_type is None


def test_invalid_broker_type_is_rejected() -> None:
    with pytest.raises(ValueError, match="RELAYBUS_MESSAGE_BROKER"):
        _settings(MESSAGE_BROKER="sqs")


def test_invalid_integer_is_rejected() -> None:
    with pytest.raises(ValueError, match="RELAYBUS_WORKER_CONCURRENCY must be an integer"):
        _settings(WORKER_CONCURRENCY="lots")


def test_overrides_are_applied() -> None:
    settings = _settings(
        MESSAGE_BROKER="rabbitmq",
        KAFKA_BROKERS="k1:9092, k2:9092,,",
        RABBITMQ_URL="amqp://user:pw@mq:5672/",
        RABBITMQ_PREFETCH="25",
        REDIS_STREAM="invocations",
        WORKER_MAX_RETRIES="0",
        LOG_LEVEL="debug",
    )
    assert settings.broker_type is BrokerType.RABBITMQ
    assert settings.kafka.brokers == ["k1:9092", "k2:9092"]
    assert settings.rabbitmq.url == "amqp://user:pw@mq:5672/"
    assert settings.rabbitmq.prefetch_count == 25
    assert settings.redis.dlq_stream == "invocations-dlq"
    assert settings.worker.max_retries == 0
    assert settings.log_level == "DEBUG"


def test_redis_dlq_stream_derives_from_stream() -> None:
    assert RedisConfig().dlq_stream == "agent-invocations-dlq"


def test_env_source_applies_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RELAYBUS_MESSAGE_BROKER", "memory")
    assert EnvConfigSource(prefix="RELAYBUS_").get("MESSAGE_BROKER") == "memory"
    assert EnvConfigSource().get("RELAYBUS_MESSAGE_BROKER") == "memory"


def test_dotenv_source_parses_exports_and_quotes(tmp_path: Path) -> None:
    dotenv = tmp_path / ".env"
    dotenv.write_text(
        "# broker\n"
        "export RELAYBUS_MESSAGE_BROKER=redis\n"
        "RELAYBUS_REDIS_URL='redis://cache:6379/1'\n"
        'RELAYBUS_KAFKA_TOPIC="events"\n'
        "UNRELATED=1\n"
        "garbage line\n",
        encoding="utf-8",
    )
    source = DotEnvConfigSource(path=dotenv, prefix="RELAYBUS_")

    assert source.get("MESSAGE_BROKER") == "redis"
    assert source.get("REDIS_URL") == "redis://cache:6379/1"
    assert source.get("KAFKA_TOPIC") == "events"
    assert source.get("UNRELATED") is None


def test_missing_dotenv_is_empty(tmp_path: Path) -> None:
    assert DotEnvConfigSource(path=tmp_path / "absent.env").get("ANY") is None


def test_environment_wins_over_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    dotenv = tmp_path / ".env"
    dotenv.write_text("RELAYBUS_MESSAGE_BROKER=kafka\n", encoding="utf-8")
    monkeypatch.setenv("RELAYBUS_MESSAGE_BROKER", "memory")
    adapter = ConfigAdapter(
        (EnvConfigSource(prefix="RELAYBUS_"), DotEnvConfigSource(path=dotenv, prefix="RELAYBUS_"))
    )
    assert load_broker_settings(adapter).broker_type is BrokerType.MEMORY


def test_timeouts_and_exchange_are_configurable() -> None:
    settings = _settings(
        KAFKA_POLL_TIMEOUT_MS="250",
        KAFKA_SHUTDOWN_TIMEOUT_S="5",
        RABBITMQ_DLX_EXCHANGE="agents.dlx",
        RABBITMQ_SHUTDOWN_TIMEOUT_S="2.5",
        REDIS_SHUTDOWN_TIMEOUT_S="7",
        WORKER_SHUTDOWN_TIMEOUT_S="12.5",
    )
    assert settings.kafka.poll_timeout_ms == 250
    assert settings.kafka.shutdown_timeout_s == 5.0
    assert settings.rabbitmq.dlx_exchange == "agents.dlx"
    assert settings.rabbitmq.shutdown_timeout_s == 2.5
    assert settings.redis.shutdown_timeout_s == 7.0
    assert settings.worker.shutdown_timeout_s == 12.5


def test_invalid_timeout_names_full_key() -> None:
    with pytest.raises(ValueError, match="RELAYBUS_KAFKA_SHUTDOWN_TIMEOUT_S must be a number"):
        _settings(KAFKA_SHUTDOWN_TIMEOUT_S="soon")


def test_section_scopes_keys() -> None:
    adapter = ConfigAdapter((DictSource({"REDIS_STREAM": "jobs", "STREAM": "other"}),))
    redis = adapter.section("REDIS")
    assert redis.get("STREAM") == "jobs"
    assert redis.env_name("STREAM") == "RELAYBUS_REDIS_STREAM"
    assert redis.get_str("URL", "redis://fallback") == "redis://fallback"


def test_blank_values_fall_back_to_defaults() -> None:
    settings = _settings(KAFKA_TOPIC="  ", REDIS_BATCH_SIZE="")
    assert settings.kafka.topic == "agent-invocations"
    assert settings.redis.batch_size == 10


def test_parse_dotenv_strips_trailing_comments() -> None:
    values = parse_dotenv("A=1 # first\nB='# kept'\n  export C = three\n=orphan\n")
    assert values == {"A": "1", "B": "# kept", "C": "three"}


def test_kafka_topic_provisioning_settings() -> None:
    settings = _settings(KAFKA_CREATE_TOPICS="no", KAFKA_NUM_PARTITIONS="12")
    assert settings.kafka.create_topics is False
    assert settings.kafka.num_partitions == 12
    assert settings.kafka.replication_factor == 1
    assert _settings().kafka.create_topics is True


def test_invalid_boolean_is_rejected() -> None:
    with pytest.raises(ValueError, match="RELAYBUS_KAFKA_CREATE_TOPICS must be a boolean"):
        _settings(KAFKA_CREATE_TOPICS="maybe")
