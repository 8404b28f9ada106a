import pytest
from flask import Flask

from config import (
    DEFAULT_QR_SIGNING_SECRET, DEFAULT_SECRET_KEY, DevelopmentConfig, ProductionConfig,
    TestingConfig, get_config, init_config, validate_config
)

STRONG_SECRET = 'k' * 48


@pytest.fixture
def production_defaults(monkeypatch):
    monkeypatch.setattr(ProductionConfig, 'QR_SIGNING_SECRET', DEFAULT_QR_SIGNING_SECRET)
    monkeypatch.setattr(ProductionConfig, 'SECRET_KEY', DEFAULT_SECRET_KEY)


def test_production_rejects_default_secrets(production_defaults):
    errors = validate_config(ProductionConfig)

    assert "QR_SIGNING_SECRET must be set in the environment" in errors
    assert "SECRET_KEY must be set in the environment" in errors


def test_production_rejects_short_signing_secret(production_defaults, monkeypatch):
    monkeypatch.setattr(ProductionConfig, 'QR_SIGNING_SECRET', 'short')
    monkeypatch.setattr(ProductionConfig, 'SECRET_KEY', STRONG_SECRET)

    assert validate_config(ProductionConfig) == [
        "QR_SIGNING_SECRET must be at least 32 characters"
    ]


def test_production_accepts_configured_secrets(monkeypatch):
    monkeypatch.setattr(ProductionConfig, 'QR_SIGNING_SECRET', STRONG_SECRET)
    monkeypatch.setattr(ProductionConfig, 'SECRET_KEY', STRONG_SECRET)

    assert validate_config(ProductionConfig) == []


def test_production_app_refuses_to_start_with_default_secret(production_defaults):
    with pytest.raises(RuntimeError):
        init_config(Flask(__name__), 'production')


@pytest.mark.parametrize('config_class', [DevelopmentConfig, TestingConfig])
def test_development_allows_default_secrets(config_class):
    assert validate_config(config_class) == []


def test_get_config():
    assert get_config('testing') is TestingConfig
    assert get_config('unknown') is DevelopmentConfig
