from backend.core.config import Settings


def test_wizard_config_defaults():
    config = Settings(_env_file=None).wizard_config()

    assert config.session_ttl_minutes == 30
    assert config.max_stores == 2
    assert config.top_k == 5
    assert config.weights.same_brand == 3.0
    assert config.min_savings == 5.0


def test_wizard_config_reads_environment(monkeypatch):
    monkeypatch.setenv("WEIGHT_SAME_BRAND", "4.5")
    monkeypatch.setenv("WIZARD_SESSION_TTL_MINUTES", "10")
    monkeypatch.setenv("WIZARD_MIN_SAVINGS", "2.5")

    config = Settings(_env_file=None).wizard_config()

    assert config.weights.same_brand == 4.5
    assert config.session_ttl_minutes == 10
    assert config.min_savings == 2.5
