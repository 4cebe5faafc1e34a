"""Tests for environment-driven process configuration."""

import pytest

from gridconquest.config import Config


def test_defaults_validate():
    Config.validate()


@pytest.mark.parametrize(
    "name",
    ["STORE_BATCH_SIZE", "COMMIT_CHUNK_SIZE", "COMMIT_MAX_ATTEMPTS", "ACTIVITY_TERRITORY_CHUNK_SIZE"],
)
def test_validate_rejects_non_positive_limits(monkeypatch, name):
    monkeypatch.setattr(Config, name, 0)

    with pytest.raises(ValueError, match=name):
        Config.validate()


def test_validate_rejects_non_positive_expiration(monkeypatch):
    monkeypatch.setattr(Config, "TERRITORY_EXPIRATION_DAYS", 0)

    with pytest.raises(ValueError, match="TERRITORY_EXPIRATION_DAYS"):
        Config.validate()


def test_display_lists_settings(monkeypatch):
    monkeypatch.setattr(Config, "STORE_BATCH_SIZE", 12)

    text = Config.display()

    assert text.startswith("gridconquest Configuration:")
    assert "Store Batch Size: 12" in text
    assert "Territory Expiration:" in text
