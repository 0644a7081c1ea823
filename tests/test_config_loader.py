"""Tests for configuration loading and validation."""
import pytest
from datetime import date

from schemas.market_data import Resolution
from toolbox.config.loader import ConfigError, ConfigLoader, DownloaderConfig


def write_yaml(tmp_path, text):
    path = tmp_path / "downloader.yaml"
    path.write_text(text)
    return path


def test_defaults():
    config = ConfigLoader(environ={}).load()

    assert config.tickers == []
    assert config.download_batch_size == 1000
    assert config.persist_batch_size == 10000
    assert config.resolutions == [
        Resolution.TICK, Resolution.SECOND, Resolution.MINUTE, Resolution.HOUR, Resolution.DAILY
    ]
    assert config.max_attempts == 3
    assert config.publish_bars is False


def test_yaml_env_and_overrides_in_increasing_priority(tmp_path):
    path = write_yaml(tmp_path, """
tickers: [BTC_USDT]
exchange: BINANCE
api_key: from-file
database_url: postgresql://file/db
start_date: 2019-01-01
end_date: 2019-01-07
resolutions: [minute, hour]
""")
    environ = {"COINAPI_API_KEY": "from-env", "DATABASE_URL": ""}

    config = ConfigLoader(path, environ=environ).load({"tickers": "ETH_USDT, LTC_USDT", "exchange": None})

    assert config.tickers == ["ETH_USDT", "LTC_USDT"]
    assert config.exchange == "BINANCE"
    assert config.api_key == "from-env"
    assert config.database_url == "postgresql://file/db"
    assert config.start_date == date(2019, 1, 1)
    assert config.resolutions == [Resolution.MINUTE, Resolution.HOUR]


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError):
        ConfigLoader(tmp_path / "nope.yaml", environ={}).load()


@pytest.mark.parametrize("text", ["- just\n- a list\n", "tickers: [unclosed\n"])
def test_config_file_must_be_a_mapping(tmp_path, text):
    with pytest.raises(ConfigError):
        ConfigLoader(write_yaml(tmp_path, text), environ={}).load()


@pytest.mark.parametrize("overrides", [
    {"download_batch_size": 1000, "persist_batch_size": 1500},
    {"download_batch_size": 0},
    {"resolutions": ["weekly"]},
    {"max_attempts": 0},
])
def test_invalid_values_raise_config_error(overrides):
    with pytest.raises(ConfigError):
        ConfigLoader(environ={}).load(overrides)


def test_require_download_settings_names_every_missing_value():
    config = DownloaderConfig(tickers=["ETH_USDT"])

    with pytest.raises(ConfigError) as excinfo:
        config.require_download_settings()

    message = str(excinfo.value)
    for name in ("exchange", "api_key", "start_date", "end_date"):
        assert name in message
    assert "tickers" not in message


def test_require_download_settings_checks_date_order():
    config = DownloaderConfig(
        tickers=["ETH_USDT"],
        exchange="BINANCE",
        api_key="key",
        start_date=date(2019, 1, 7),
        end_date=date(2019, 1, 1),
    )

    with pytest.raises(ConfigError):
        config.require_download_settings()


def test_ingest_settings_follow_config():
    settings = DownloaderConfig(download_batch_size=500, persist_batch_size=5000).ingest_settings()
    assert (settings.download_batch_size, settings.persist_batch_size) == (500, 5000)
