from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
import time
from typing import Any, Callable

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from pagerpush.core.config import Settings, get_settings
from pagerpush.core.errors import ProviderConfigError
from pagerpush.domain.models import SignedCredential
from pagerpush.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SIGNING_ALGORITHM = "ES256"


def load_signing_key(*, pem: str | None = None, path: str | None = None) -> ec.EllipticCurvePrivateKey:
    # Accept the .p8 auth key inline or from disk; both are PKCS#8 PEM.
    if pem:
        raw = pem.replace("\\n", "\n").encode("utf-8")
    elif path:
        try:
            raw = Path(path).expanduser().read_bytes()
        except OSError as exc:
            raise ProviderConfigError(f"cannot read APNs signing key at {path}: {exc}") from exc
    else:
        raise ProviderConfigError("APNs signing key is not configured")
    try:
        key = serialization.load_pem_private_key(raw, password=None)
    except (ValueError, TypeError) as exc:
        raise ProviderConfigError(f"APNs signing key is not a valid PEM private key: {exc}") from exc
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ProviderConfigError("APNs signing key must be an EC (P-256) private key")
    return key


class CredentialProvider:
    """Mints and caches the provider authentication token sent with every push.

    The gateway rejects tokens older than ``ttl_s`` and also rejects tokens
    regenerated too often, so a token is reused until it is ``refresh_s`` old
    and then replaced eagerly on the next call.
    """

    def __init__(
        self,
        *,
        signing_key: ec.EllipticCurvePrivateKey,
        key_id: str,
        team_id: str,
        refresh_s: int = 3000,
        ttl_s: int = 3600,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        if refresh_s >= ttl_s:
            raise ProviderConfigError("token refresh interval must be shorter than its validity")
        self._signing_key = signing_key
        self._key_id = key_id
        self._team_id = team_id
        self._refresh_s = refresh_s
        self._ttl_s = ttl_s
        self._time = time_source or time.time
        self._lock = Lock()
        self._cached: SignedCredential | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> CredentialProvider:
        settings = settings or get_settings()
        if not settings.apns_key_id or not settings.apns_team_id:
            raise ProviderConfigError("APNS_KEY_ID and APNS_TEAM_ID are required")
        return cls(
            signing_key=load_signing_key(pem=settings.apns_key, path=settings.apns_key_path),
            key_id=settings.apns_key_id,
            team_id=settings.apns_team_id,
            refresh_s=settings.apns_token_refresh_s,
            ttl_s=settings.apns_token_ttl_s,
            **kwargs,
        )

    def _is_fresh(self, credential: SignedCredential, now: float) -> bool:
        return (now - credential.issued_at) < self._refresh_s

    def _mint(self, now: float) -> SignedCredential:
        issued_at = int(now)
        token = jwt.encode(
            {"iss": self._team_id, "iat": issued_at},
            self._signing_key,
            algorithm=_SIGNING_ALGORITHM,
            headers={"kid": self._key_id},
        )
        increment_counter("apns_token_minted_total")
        logger.info("apns_token_minted key_id=%s issued_at=%s", self._key_id, issued_at)
        return SignedCredential(token=token, issued_at=issued_at)

    def current_token(self) -> SignedCredential:
        now = self._time()
        cached = self._cached
        if cached is not None and self._is_fresh(cached, now):
            return cached
        with self._lock:
            # Another caller may have refreshed while we waited on the lock.
            cached = self._cached
            if cached is not None and self._is_fresh(cached, now):
                return cached
            self._cached = self._mint(now)
            return self._cached

    def invalidate(self) -> None:
        # Force a new token after the gateway reports ExpiredProviderToken.
        with self._lock:
            self._cached = None
