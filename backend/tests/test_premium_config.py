import pytest

from backend.app.premium import PremiumConfig, load_premium_config


def test_load_premium_config_defaults():
    config = load_premium_config({})

    assert config == PremiumConfig()
    assert config.grace_period_days == 7
    assert config.reminder_throttle_hours == 24
    assert config.default_period_days == 30
    assert config.stripe_webhook_secret is None
    assert config.reminder_scheduler_enabled is False


def test_load_premium_config_reads_environment_values():
    config = load_premium_config(
        {
            "PREMIUM_GRACE_PERIOD_DAYS": "10",
            "PREMIUM_REMINDER_THROTTLE_HOURS": "12",
            "PREMIUM_TRANSACTION_TIMEOUT_MS": "2500",
            "PREMIUM_REMINDER_INTERVAL_SECONDS": "5",
            "PREMIUM_REMINDER_SCHEDULER_ENABLED": "yes",
            "STRIPE_WEBHOOK_SECRET": "  whsec_abc  ",
            "STRIPE_WEBHOOK_TOLERANCE_SECONDS": "60",
        }
    )

    assert config.grace_period_days == 10
    assert config.reminder_throttle_hours == 12
    assert config.transaction_timeout_ms == 2500
    assert config.reminder_interval_seconds == 60.0
    assert config.reminder_scheduler_enabled is True
    assert config.stripe_webhook_secret == "whsec_abc"
    assert config.stripe_webhook_tolerance_seconds == 60


def test_load_premium_config_rejects_non_numeric_values():
    with pytest.raises(ValueError):
        load_premium_config({"PREMIUM_GRACE_PERIOD_DAYS": "seven"})


def test_load_premium_config_reads_stripe_secret_and_price_ids():
    config = load_premium_config(
        {
            "STRIPE_SECRET_KEY": "sk_test_123",
            "STRIPE_PRICE_ID_PREMIUM": "price_premium",
            "STRIPE_PRICE_ID_CONCIERGE": " price_concierge ",
            "STRIPE_PRICE_ID_STANDARD": "",
        }
    )

    assert config.stripe_secret_key == "sk_test_123"
    assert config.stripe_price_ids == {"PREMIUM": "price_premium", "CONCIERGE": "price_concierge"}
