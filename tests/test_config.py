from decimal import Decimal

from marketplace_payments.config import Settings


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_env")
    monkeypatch.setenv("PLATFORM_FEE_RATE", "0.1")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://app.example.com, https://admin.example.com")

    settings = Settings()

    assert settings.stripe_secret_key == "sk_test_env"
    assert settings.platform_fee_rate == Decimal("0.1")
    assert settings.rate_limit_enabled is False
    assert settings.get_allowed_origins_list() == ["https://app.example.com", "https://admin.example.com"]


def test_onboarding_urls_follow_frontend():
    settings = Settings(frontend_url="https://app.example.com")

    assert settings.onboarding_return_url == "https://app.example.com/merchant/onboarding/complete"
    assert settings.onboarding_refresh_url == "https://app.example.com/merchant/onboarding/refresh"
