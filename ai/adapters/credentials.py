"""Credential resolution: caller key → global key → environment key.

Every scope is searched with the same provider priority taken from
``configs/providers.yml``, so the outcome only depends on the caller and the
stored keys, never on row order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from core.audit import audit_credential_selection
from core.config import ENV_KEY_VARS, AppSettings, ProvidersConfig
from core.errors import ConfigurationError
from core.logging import logger

from .providers import ProviderCredential

__all__ = ["ApiKeyRecord", "KeyStore", "CredentialResolver"]

SCOPE_USER = "user"
SCOPE_GLOBAL = "global"
SCOPE_ENVIRONMENT = "environment"


@dataclass
class ApiKeyRecord:
    """A stored provider key, either owned by a user or global (admin default)."""
    key_type: str
    api_key: str
    user_id: Optional[str] = None
    is_global: bool = False
    id: Optional[str] = None
    created_at: Optional[datetime] = None


class KeyStore(Protocol):
    async def user_keys(self, user_id: str) -> List[ApiKeyRecord]: ...

    async def global_keys(self) -> List[ApiKeyRecord]: ...


class CredentialResolver:
    """Picks the credential for one request. Read-only; safe to share."""

    def __init__(
        self,
        providers: ProvidersConfig,
        settings: AppSettings,
        key_store: Optional[KeyStore] = None,
    ):
        self._providers = providers
        self._settings = settings
        self._store = key_store

    @property
    def priority(self) -> List[str]:
        return list(self._providers.priority)

    async def resolve(self, caller_id: Optional[str] = None) -> ProviderCredential:
        credential = None
        if caller_id and self._store is not None:
            credential = await self._from_store(
                SCOPE_USER, lambda: self._store.user_keys(caller_id)
            )
        if credential is None and self._store is not None:
            credential = await self._from_store(SCOPE_GLOBAL, self._store.global_keys)
        if credential is None:
            credential = self._from_environment()

        if credential is None:
            missing = self.env_variables()
            raise ConfigurationError(
                "No API key configured. Add an API key to your account, ask an admin to add a "
                f"global key, or set one of these environment variables: {', '.join(missing)}.",
                missing=missing,
            )

        logger.info(f"Using {credential.scope} API key for provider {credential.provider}")
        audit_credential_selection(caller_id, credential.provider, credential.scope, credential.api_key)
        return credential

    def env_variables(self) -> List[str]:
        """Environment variables that would satisfy resolution, in priority order."""
        names: List[str] = []
        for provider in self.priority:
            names.extend(ENV_KEY_VARS.get(provider, ()))
        return names

    # ------------------------------------------------------------------
    async def _from_store(
        self, scope: str, lookup: Callable[[], Awaitable[List[ApiKeyRecord]]]
    ) -> Optional[ProviderCredential]:
        try:
            records = await lookup()
        except Exception as e:
            # A failing scope counts as "no key here"; resolution moves on.
            logger.error(f"API key lookup failed for {scope} scope: {e}")
            return None
        return self._pick(scope, ((r.key_type, r.api_key) for r in records))

    def _from_environment(self) -> Optional[ProviderCredential]:
        return self._pick(
            SCOPE_ENVIRONMENT,
            ((name, self._settings.fallback_key(name)) for name in self.priority),
        )

    def _pick(self, scope: str, keys: Iterable) -> Optional[ProviderCredential]:
        available: Dict[str, str] = {}
        for key_type, api_key in keys:
            if not api_key or key_type in available:
                continue
            if key_type not in self._providers.providers:
                logger.warning(f"Ignoring {scope} API key of unknown type '{key_type}'")
                continue
            available[key_type] = api_key
        for provider in self.priority:
            if provider in available:
                return self._credential(provider, available[provider], scope)
        return None

    def _credential(self, provider: str, api_key: str, scope: str) -> ProviderCredential:
        spec = self._providers.providers[provider]
        return ProviderCredential(
            provider=provider,
            api_key=api_key,
            model=spec.model,
            endpoint=spec.endpoint,
            wire=spec.wire,
            scope=scope,
        )
