import sys
from pathlib import Path

import pytest

# Add project root to the path to allow imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ai.adapters.credentials import CredentialResolver
from ai.adapters.providers import ProviderAdapter
from core.config import ENV_KEY_VARS, AppSettings, ProvidersConfig, load_config
from core.monitoring import MonitoringService
from services.prd_service import PRDService
from services.storage import ApiKeyStore, PRDStore
from tests.helpers import RecordingTransport


@pytest.fixture
def clean_env(monkeypatch):
    """Removes provider keys from the real environment."""
    for names in ENV_KEY_VARS.values():
        for name in names:
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def app_settings(clean_env, tmp_path) -> AppSettings:
    return AppSettings(
        _env_file=None,
        DATABASE_PATH=str(tmp_path / "prd.db"),
        AUTH_TOKENS={"token-alice": "alice", "token-bob": "bob", "token-root": "root"},
        ADMIN_USER_IDS=["root"],
    )


@pytest.fixture
def providers_config() -> ProvidersConfig:
    return load_config("providers", ProvidersConfig)


@pytest.fixture
def key_store(app_settings) -> ApiKeyStore:
    return ApiKeyStore(app_settings.DATABASE_PATH)


@pytest.fixture
def prd_store(app_settings) -> PRDStore:
    return PRDStore(app_settings.DATABASE_PATH)


@pytest.fixture
def make_service(providers_config, app_settings, key_store, prd_store):
    """Builds a PRDService whose upstream is ``transport``."""
    def build(transport: RecordingTransport, store=prd_store, keys=key_store) -> PRDService:
        return PRDService(
            resolver=CredentialResolver(providers_config, app_settings, keys),
            adapter=ProviderAdapter(client=transport.client()),
            store=store,
            monitoring=MonitoringService(),
        )
    return build
