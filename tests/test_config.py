import pytest

from opsqueue_core.config import EngineConfig, build_channels, build_store
from opsqueue_core.monitoring.channels import AppriseChannel, ChannelType
from opsqueue_core.storage.memory import MemoryBackend
from opsqueue_core.storage.redis import RedisBackend
from opsqueue_core.storage.sql import SQLBackend


def test_defaults():
    config = EngineConfig()
    assert config.storage == "memory"
    assert config.escalation_after_minutes == 15
    assert "backup" in config.alert_on_failure
    assert isinstance(build_store(config), MemoryBackend)
    assert build_channels(config) == []


def test_from_env_reads_prefixed_variables():
    config = EngineConfig.from_env({
        "OPSQUEUE_STORAGE": "redis",
        "OPSQUEUE_STORAGE_URL": "redis://cache:6379/2",
        "OPSQUEUE_POLL_INTERVAL_MS": "250",
        "OPSQUEUE_ALERT_ON_FAILURE": "backup, set-import",
        "OPSQUEUE_PRICE_UPDATE_CONCURRENCY": "4",
        "OPSQUEUE_CHAT_URLS": "slack://a/b/c, discord://id/token",
        "OPSQUEUE_MAIL_RECIPIENT_URL": "mailto://smtp.example.com?to={recipient}",
        "OPSQUEUE_LOG_LEVEL": "debug",
        "UNRELATED": "ignored",
    })

    assert config.storage == "redis"
    assert config.poll_interval_ms == 250
    assert config.alert_on_failure == ("backup", "set-import")
    assert config.concurrency == {"price-update": 4}
    assert config.channel_urls == {"chat": ["slack://a/b/c", "discord://id/token"]}
    assert config.recipient_urls == {"mail": "mailto://smtp.example.com?to={recipient}"}
    assert config.log_level == "DEBUG"

    store = build_store(config)
    assert isinstance(store, RedisBackend)
    assert store.url == "redis://cache:6379/2"


def test_empty_environment_gives_defaults():
    assert EngineConfig.from_env({}) == EngineConfig()


@pytest.mark.parametrize(
    "environ",
    [
        {"OPSQUEUE_STORAGE": "postgres"},
        {"OPSQUEUE_POLL_INTERVAL_MS": "fast"},
        {"OPSQUEUE_ALERT_ON_FAILURE": "no-such-queue"},
        {"OPSQUEUE_BACKUP_CONCURRENCY": "0"},
    ],
)
def test_invalid_values_raise(environ):
    with pytest.raises(ValueError):
        EngineConfig.from_env(environ)


def test_build_sql_store(tmp_path):
    store = build_store(EngineConfig(storage="sql", storage_url=str(tmp_path / "ops.db")))
    assert isinstance(store, SQLBackend)
    store.close()


def test_build_channels_one_per_configured_type():
    config = EngineConfig(
        channel_urls={"chat": ["json://hooks.example.com"], "pager": ["pagerduty://key@token"]},
        recipient_urls={"sms": "twilio://sid:token@+15550000/{recipient}"},
    )
    channels = build_channels(config)

    assert [c.type for c in channels] == [ChannelType.SMS, ChannelType.CHAT, ChannelType.PAGER]
    assert all(isinstance(c, AppriseChannel) for c in channels)
    assert channels[0].config["urls"] == []
    assert channels[0].config["recipient_url"].endswith("/{recipient}")
