"""Tests for identifier generators and configuration."""
import random

from commerce_ledger.config import Settings
from commerce_ledger.ids import TimestampIdGenerator, UuidIdGenerator


def test_timestamp_ids_have_prefix_and_digits():
    generate = TimestampIdGenerator("#CPMWL", rng=random.Random(7))
    value = generate()

    assert value.startswith("#CPMWL")
    assert value[len("#CPMWL"):].isdigit()


def test_uuid_ids_are_unique():
    generate = UuidIdGenerator("CPMWL")
    values = {generate() for _ in range(100)}

    assert len(values) == 100
    assert all(v.startswith("CPMWL") for v in values)


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("LEDGER_DATABASE_URL", "sqlite:///tmp.db")
    monkeypatch.setenv("LEDGER_ECHO_SQL", "true")
    monkeypatch.setenv("LEDGER_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.database_url == "sqlite:///tmp.db"
    assert settings.echo_sql is True
    assert settings.log_level == "DEBUG"
    assert settings.policy.points_per_currency_unit == 100
