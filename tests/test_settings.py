from catalog_sync.services.sync_orchestrator import SyncPolicy
from catalog_sync.settings import Settings, _asyncpg_connect_args_from_url


def test_database_url_is_rewritten_for_asyncpg(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db.internal:5432/catalog")
    settings = Settings(_env_file=None)
    assert settings.async_database_url == "postgresql+asyncpg://u:p@db.internal:5432/catalog"


def test_railway_internal_host_disables_ssl():
    assert _asyncpg_connect_args_from_url("postgresql+asyncpg://u:p@postgres.railway.internal/db") == {
        "ssl": False,
        "timeout": 20,
    }
    assert _asyncpg_connect_args_from_url("sqlite+aiosqlite:///tmp/x.db") == {}


def test_provider_key_accepts_legacy_env_name(monkeypatch):
    monkeypatch.delenv("CATALOG_API_KEY", raising=False)
    monkeypatch.setenv("SKULYTICS_API_KEY", "legacy-key")
    assert Settings(_env_file=None).catalog_api_key == "legacy-key"


def test_sync_policy_reads_settings(monkeypatch):
    monkeypatch.setenv("SYNC_MAX_RATE_LIMIT_RETRIES", "2")
    monkeypatch.setenv("SYNC_RATE_LIMIT_FLOOR", "25")
    monkeypatch.setenv("CATALOG_PAGE_SIZE", "50")
    policy = SyncPolicy.from_settings(Settings(_env_file=None))

    assert policy.max_rate_limit_retries == 2
    assert policy.rate_limit_floor == 25
    assert policy.page_size == 50
    assert policy.stale_threshold_hours == 36
