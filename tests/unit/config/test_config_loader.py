import datetime as dt
from pathlib import Path

import pytest
from pydantic import ValidationError

from tickbars.config.config_loader import load_model, read_config_file, snake_key
from tickbars.config.configs import HttpConfig, IngestOptions, InstrumentConfig, SessionConfig
from tickbars.errors.errors import ConfigurationError
from tests.fixtures.fixtures import UTC

REPO_CONFIG = Path(__file__).resolve().parents[3] / "config"


@pytest.mark.parametrize(
    "key,expected",
    [
        ("BaseUrls", "base_urls"),
        ("TimeZoneId", "time_zone_id"),
        ("retry-count", "retry_count"),
        ("chunk_size", "chunk_size"),
    ],
)
def test_snake_key(key: str, expected: str):
    assert snake_key(key) == expected


def test_missing_file_gives_defaults(tmp_path: Path):
    cfg = load_model(tmp_path / "absent.json", HttpConfig)
    assert cfg.base_urls == ["https://datafeed.dukascopy.com/datafeed"]
    assert cfg.retry_count == 3
    assert load_model(None, InstrumentConfig).digits == {}


def test_pascal_case_json_is_accepted(tmp_path: Path):
    fp = tmp_path / "http.json"
    fp.write_text(
        '{"BaseUrls": ["https://a.test/feed/ ", "https://b.test/feed"],'
        ' "RetryCount": 5, "RetryBackoffSeconds": 0.5, "TimeoutSeconds": 10}'
    )
    cfg = load_model(fp, HttpConfig)
    assert cfg.base_urls == ["https://a.test/feed", "https://b.test/feed"]
    assert (cfg.retry_count, cfg.retry_backoff_seconds, cfg.timeout_seconds) == (5, 0.5, 10.0)


def test_digits_table_keys_are_kept_and_uppercased(tmp_path: Path):
    fp = tmp_path / "instruments.json"
    fp.write_text('{"Digits": {"eurusd": 4, "XAU_USD": 2}}')
    cfg = load_model(fp, InstrumentConfig)

    assert cfg.digits == {"EURUSD": 4, "XAU_USD": 2}
    assert cfg.get_digits("EurUsd") == 4
    assert cfg.try_get_digits("GBPUSD") is None
    assert cfg.get_digits("USDJPY") == 3
    with pytest.raises(ConfigurationError, match="Unknown instrument"):
        cfg.get_digits("UNKNOWN")


def test_session_config_from_toml(tmp_path: Path):
    fp = tmp_path / "sessions.toml"
    fp.write_text(
        'TimeZoneId = "Europe/Berlin"\n'
        'Holidays = ["2024-12-25"]\n'
        "[[Sessions]]\n"
        'Day = "Friday"\n'
        'Start = "00:00"\n'
        'End = "21:00"\n'
    )
    cfg = load_model(fp, SessionConfig)
    assert cfg.time_zone == "Europe/Berlin"
    assert cfg.sessions[0].day == "Friday"
    assert cfg.sessions[0].end == "21:00"
    assert cfg.holidays == ["2024-12-25"]


def test_invalid_values_raise_configuration_error(tmp_path: Path):
    fp = tmp_path / "http.json"
    fp.write_text('{"RetryCount": 0}')
    with pytest.raises(ConfigurationError) as excinfo:
        load_model(fp, HttpConfig)
    errors = excinfo.value.details["errors"]
    assert errors[0]["path"] == "retry_count"


def test_unparseable_file_raises(tmp_path: Path):
    fp = tmp_path / "http.json"
    fp.write_text("{nope")
    with pytest.raises(ConfigurationError, match="not parseable"):
        read_config_file(fp)

    fp.write_text("[1, 2]")
    with pytest.raises(ConfigurationError, match="must be an object"):
        read_config_file(fp)


def test_shipped_config_files_load():
    assert load_model(REPO_CONFIG / "http.json", HttpConfig).retry_count == 3
    assert load_model(REPO_CONFIG / "instruments.json", InstrumentConfig).get_digits("USDJPY") == 3
    assert len(load_model(REPO_CONFIG / "sessions.json", SessionConfig).sessions) == 6


# --- IngestOptions ---


def test_ingest_options_normalize_inputs():
    opts = IngestOptions(
        instrument=" eurusd ",
        start=dt.datetime(2024, 3, 4),
        end="2024-03-05T00:00:00+02:00",
        timeframe="4h",
        utc_offset="+02:00",
    )
    assert opts.instrument == "EURUSD"
    assert opts.start == dt.datetime(2024, 3, 4, tzinfo=UTC)
    assert opts.end.utcoffset() == dt.timedelta(0)
    assert opts.end.hour == 22
    assert opts.timeframe == "h4"
    assert opts.descriptor.minutes == 240
    assert opts.utc_offset == dt.timedelta(hours=2)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"start": dt.datetime(2024, 3, 5), "end": dt.datetime(2024, 3, 4)},
        {"timeframe": "m7"},
        {"utc_offset": "+25:00"},
        {"utc_offset": dt.timedelta(hours=30)},
        {"mode": "stream"},
        {"output_format": "xlsx"},
        {"unknown_option": True},
    ],
)
def test_ingest_options_reject(kwargs: dict):
    with pytest.raises(ValidationError):
        IngestOptions(**kwargs)
