import pytest

from src.ehs_enforcement.config import REGISTRY_API_KEY_ENV, EnforcementConfig, ScrapingConfig


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "ehs_enforcement.yaml"
    path.write_text(
        """
scraping:
  consecutive_existing_threshold: 3
  detail_delay_ms: 1500
  unknown_setting: true
agencies:
  hse:
    name: Health and Safety Executive
    databases: [convictions, notices]
    country: Scotland
  ea:
    enabled: false
registry:
  api_key: from-file
""",
        encoding="utf-8",
    )
    return path


def test_defaults():
    config = ScrapingConfig()
    assert config.consecutive_existing_threshold == 10
    assert config.max_consecutive_errors == 3
    assert config.detail_delay_seconds == 3.0
    assert config.page_pause_seconds == 3.0
    assert config.timeout_seconds == 30.0
    assert config.auto_link_threshold == 0.85
    assert config.review_threshold == 0.5


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_pages": -1},
        {"max_retries": 0},
        {"auto_link_threshold": 1.5},
        {"auto_link_threshold": 0.4, "review_threshold": 0.6},
    ],
)
def test_invalid_settings_are_rejected(overrides):
    with pytest.raises(ValueError):
        ScrapingConfig(**overrides)


def test_with_overrides_ignores_none():
    base = ScrapingConfig(max_pages=50)
    updated = base.with_overrides(max_pages=None, consecutive_existing_threshold=2)

    assert updated.max_pages == 50
    assert updated.consecutive_existing_threshold == 2
    assert base.consecutive_existing_threshold == 10


def test_load_from_yaml(config_file, monkeypatch):
    monkeypatch.delenv(REGISTRY_API_KEY_ENV, raising=False)
    config = EnforcementConfig(config_file)

    assert config.scraping.consecutive_existing_threshold == 3
    assert config.scraping.detail_delay_ms == 1500
    assert config.scraping.max_pages == 100

    hse = config.get_agency("hse")
    assert hse.name == "Health and Safety Executive"
    assert hse.databases == ["convictions", "notices"]
    assert hse.country == "Scotland"
    assert [agency.code for agency in config.get_enabled_agencies()] == ["hse"]
    assert config.registry_api_key == "from-file"


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv(REGISTRY_API_KEY_ENV, "from-env")
    config = EnforcementConfig(tmp_path / "missing.yaml")

    assert config.scraping == ScrapingConfig()
    assert config.get_agency("ea").name == "EA"
    assert config.registry_api_key == "from-env"
