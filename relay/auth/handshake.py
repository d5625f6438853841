import logging
from typing import Optional

import httpx

from relay.api.v1.metrics import HANDSHAKES
from relay.auth.pkce import generate_pkce, generate_state
from relay.auth.providers import OAuthProvider
from relay.auth.sessions import HandshakeSessionStore, SESSION_TTL_SECONDS
from relay.auth.tokens import CredentialManager
from relay.domain.errors import InvalidState, ExchangeFailure, ProviderError
from relay.domain.models import Credential, HandshakeSession, HandshakeStart
from relay.domain.states import Platform

logger = logging.getLogger(__name__)


class HandshakeBridge:
    """
    Bridges the provider's authorization redirect back into credential storage.

    begin_handshake() issues a state token (CSRF nonce and session key) and,
    for PKCE providers, keeps the code verifier server-side.
    complete_handshake() redeems the state exactly once, exchanges the
    authorization code and stores the resulting credential.
    """

    def __init__(
        self,
        providers: dict[Platform, OAuthProvider],
        sessions: HandshakeSessionStore,
        credentials: CredentialManager,
        http_client: httpx.AsyncClient,
        session_ttl: float = SESSION_TTL_SECONDS,
    ):
        self.providers = providers
        self.sessions = sessions
        self.credentials = credentials
        self.http_client = http_client
        self.session_ttl = session_ttl

    def provider_for(self, platform: str) -> OAuthProvider:
        return self.providers[Platform.parse(platform)]

    def begin_handshake(self, platform: str, user_id: str) -> HandshakeStart:
        provider = self.provider_for(platform)
        provider.require_configured()

        state = generate_state()
        session = HandshakeSession(platform=provider.platform.value, user_id=user_id)

        challenge = None
        if provider.use_pkce:
            session.code_verifier, challenge = generate_pkce()

        url = provider.authorization_url(state, challenge)
        self.sessions.put(state, session, self.session_ttl)

        HANDSHAKES.labels(platform=provider.platform.value, result="started").inc()
        logger.info(f"Issued {provider.platform} handshake for user {user_id}")
        return HandshakeStart(authorization_url=url, state=state)

    async def complete_handshake(self, state: str, code: str, platform: Optional[str] = None) -> Credential:
        session = self.sessions.take_once(state)
        if session is None:
            HANDSHAKES.labels(platform=platform or "unknown", result="invalid_state").inc()
            raise InvalidState()

        if platform is not None and Platform.parse(platform).value != session.platform:
            # A state issued for one provider cannot be redeemed on another's callback
            HANDSHAKES.labels(platform=platform, result="invalid_state").inc()
            raise InvalidState("The authentication session does not match this platform.")

        provider = self.provider_for(session.platform)
        try:
            cred = await provider.exchange_code(self.http_client, code, session.code_verifier)
        except ExchangeFailure:
            HANDSHAKES.labels(platform=session.platform, result="exchange_failed").inc()
            raise

        await self.credentials.store(cred)

        HANDSHAKES.labels(platform=session.platform, result="completed").inc()
        logger.info(f"Completed {session.platform} handshake for user {session.user_id}")
        return cred

    def abort_handshake(self, state: Optional[str], error: str, platform: str) -> None:
        """
        Handles a provider redirect that carries an error instead of a code.
        The session (if any) is discarded so the state cannot be redeemed
        later, then ProviderError is raised.
        """
        if state:
            self.sessions.take_once(state)
        HANDSHAKES.labels(platform=platform, result="provider_error").inc()
        logger.warning(f"{platform} authorization was refused: {error}")
        raise ProviderError(error)
