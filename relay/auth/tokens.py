import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from relay.api.v1.metrics import TOKEN_REFRESHES
from relay.commands.tokens import save_token, get_token, list_tokens, delete_token
from relay.db.session import Store
from relay.domain.models import Credential, CredentialStatus, EngineConfig
from relay.utils.clock import Clock, utc_now, as_utc

logger = logging.getLogger(__name__)

# Refresh if the token expires in less than this
REFRESH_BUFFER = timedelta(minutes=5)

RefreshFn = Callable[[Credential], Awaitable[Optional[Credential]]]


def calculate_expiration(expires_in: float, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) + timedelta(seconds=expires_in)


def credential_from_token_response(
    platform: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    expires_in: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Credential:
    """Builds a Credential from the fields of an OAuth token response."""
    return Credential(
        platform=platform,
        access_token=access_token,
        refresh_token=refresh_token or None,
        expires_at=calculate_expiration(expires_in, now) if expires_in else None,
    )


class CredentialManager:
    """
    Expiry-aware storage for per-platform OAuth credentials.

    Credentials are refreshed ahead of time: once a token is within the
    refresh buffer of its expiry, get_valid() swaps it for a new one using
    the platform's refresh function.
    """

    def __init__(self, db: Store, config: Optional[EngineConfig] = None, clock: Clock = utc_now):
        self.db = db
        self.refresh_buffer = config.refresh_buffer if config else REFRESH_BUFFER
        self.clock = clock

    def needs_refresh(self, cred: Credential) -> bool:
        if not cred.expires_at:
            return False
        return as_utc(cred.expires_at) - self.clock() < self.refresh_buffer

    def is_expired(self, cred: Credential) -> bool:
        if not cred.expires_at:
            return False
        return as_utc(cred.expires_at) <= self.clock()

    async def get(self, platform: str) -> Optional[Credential]:
        async with self.db.transaction() as session:
            token = await get_token(session, platform)
            return token.to_domain() if token else None

    async def get_valid(self, platform: str, refresh_fn: Optional[RefreshFn] = None) -> Optional[Credential]:
        """
        Returns a usable credential for the platform, refreshing it first if
        it is expired or about to expire. None means the caller has to send
        the user through the OAuth flow again.
        """
        cred = await self.get(platform)
        if not cred:
            return None

        if not self.needs_refresh(cred) and not self.is_expired(cred):
            return cred

        if not cred.refresh_token:
            logger.info(f"Token for {platform} expired but no refresh token available")
            TOKEN_REFRESHES.labels(platform=platform, result="unavailable").inc()
            return None

        if not refresh_fn:
            logger.info(f"Token for {platform} needs refresh but no refresh function provided")
            TOKEN_REFRESHES.labels(platform=platform, result="unavailable").inc()
            return None

        # Not retried here; the next get_valid() call tries again
        try:
            logger.info(f"Refreshing token for {platform}...")
            new_cred = await refresh_fn(cred)
        except Exception as e:
            logger.error(f"Failed to refresh token for {platform}: {e}")
            TOKEN_REFRESHES.labels(platform=platform, result="failed").inc()
            return None

        if not new_cred:
            TOKEN_REFRESHES.labels(platform=platform, result="failed").inc()
            return None

        await self.store(new_cred)
        TOKEN_REFRESHES.labels(platform=platform, result="success").inc()
        return new_cred

    async def store(self, cred: Credential) -> None:
        async with self.db.transaction() as session:
            await save_token(session, cred, self.clock())
        logger.info(f"Stored credential for {cred.platform}")

    async def remove(self, platform: str) -> bool:
        async with self.db.transaction() as session:
            return await delete_token(session, platform)

    async def status(self, platform: str) -> CredentialStatus:
        cred = await self.get(platform)
        if not cred:
            # Unknown is reported as needing attention
            return CredentialStatus(exists=False, expired=True, needs_refresh=True)

        return CredentialStatus(
            exists=True,
            expired=self.is_expired(cred),
            needs_refresh=self.needs_refresh(cred),
            expires_at=cred.expires_at,
        )

    async def list_credentials(self) -> list[Credential]:
        async with self.db.transaction() as session:
            return [t.to_domain() for t in await list_tokens(session)]
