"""
Credential lookup with refresh-on-demand.

Refresh-and-persist runs under a lock keyed by (user, provider), so two
workers of the same user never refresh concurrently and a stale refresh
token cannot overwrite a fresher one.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Callable, Hashable

from core.models import AuthError, Credential, Provider, TokenGrant, utcnow
from core.store import CredentialStore

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 5 * 60

Refresher = Callable[[str], TokenGrant]


class KeyedLock:
    """One mutex per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = defaultdict(threading.Lock)

    def __call__(self, key: Hashable) -> threading.Lock:
        with self._guard:
            return self._locks[key]


class CredentialManager:
    """Hands out credentials that stay valid for at least the refresh margin."""

    def __init__(self, store: CredentialStore, refreshers: dict[Provider, Refresher],
                 clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._refreshers = refreshers
        self._clock = clock
        self._locks = KeyedLock()

    def get_valid(self, user_id: str, provider: Provider) -> Credential:
        """Return a usable credential, refreshing it first if it expires soon."""
        provider = Provider(provider)
        cred = self._store.get_credential(user_id, provider)
        if cred is None:
            raise AuthError(f"User {user_id} is not connected to {provider.value}")
        if cred.seconds_left(self._clock()) >= REFRESH_MARGIN_SECONDS:
            return cred

        with self._locks((user_id, provider.value)):
            # Another worker may have refreshed while we waited.
            cred = self._store.get_credential(user_id, provider)
            if cred is None:
                raise AuthError(f"User {user_id} is not connected to {provider.value}")
            if cred.seconds_left(self._clock()) >= REFRESH_MARGIN_SECONDS:
                return cred
            return self._refresh(cred)

    def _refresh(self, cred: Credential) -> Credential:
        if not cred.refresh_token:
            raise AuthError(f"No refresh token for user {cred.user_id} on {cred.provider.value}")
        refresher = self._refreshers.get(cred.provider)
        if refresher is None:
            raise AuthError(f"No token refresher configured for {cred.provider.value}")

        logger.info(f"Refreshing {cred.provider.value} token for user {cred.user_id}")
        try:
            grant = refresher(cred.refresh_token)
        except AuthError:
            raise
        except Exception as e:
            raise AuthError(f"Token refresh failed for {cred.provider.value}: {e}") from e

        return self._store.upsert_credential(
            cred.user_id,
            cred.provider,
            grant.access_token,
            grant.refresh_token or cred.refresh_token,
            grant.expires_at,
        )

    def connect(self, user_id: str, provider: Provider, access_token: str,
                refresh_token: str | None, expires_at: datetime) -> Credential:
        """Store a credential issued by the OAuth flow."""
        return self._store.upsert_credential(user_id, Provider(provider), access_token,
                                             refresh_token, expires_at)

    def disconnect(self, user_id: str, provider: Provider) -> bool:
        removed = self._store.delete_credential(user_id, Provider(provider))
        if removed:
            logger.info(f"Disconnected {Provider(provider).value} for user {user_id}")
        return removed
