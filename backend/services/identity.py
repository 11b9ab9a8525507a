"""
Identity verification for joinRole.

Clients sign in with Firebase on their side and attach the resulting ID token.
The core only needs a stable opaque string per person so a reconnecting
participant can rebind their seat; the token's ``sub`` claim is used.
"""
import asyncio
import logging
from typing import Optional

from config import Settings, settings as default_settings
from models.errors import Unauthorized

logger = logging.getLogger(__name__)

FIREBASE_ISSUER = "https://securetoken.google.com/{project}"


class IdentityVerifier:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._request = None

    def _transport(self):
        if self._request is None:
            # Lazy import: requests-backed transport caches Google's signing certs
            import google.auth.transport.requests
            self._request = google.auth.transport.requests.Request()
        return self._request

    def _verify_sync(self, token: str, audience: str) -> str:
        from google.oauth2 import id_token

        claims = id_token.verify_firebase_token(token, self._transport(), audience=audience)
        if claims.get("iss") != FIREBASE_ISSUER.format(project=audience):
            raise ValueError(f"unexpected issuer {claims.get('iss')!r}")
        identity = claims.get("sub") or claims.get("user_id")
        if not identity:
            raise ValueError("token carries no subject")
        return str(identity)

    async def verify(self, token: Optional[str]) -> Optional[str]:
        """
        Return the verified identity for ``token``, or None when no token was
        supplied and identity is optional. Raises Unauthorized otherwise.
        """
        token = (token or "").strip()
        if not token:
            if self.settings.require_identity:
                raise Unauthorized()
            return None
        audience = self.settings.token_audience
        if not audience:
            # Without a project id google-auth would accept tokens from any project
            logger.warning("Identity token supplied but no Firebase project is configured")
            raise Unauthorized("Identity verification is not configured on this server")
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._verify_sync, token, audience)
        except Exception as exc:
            logger.info("Identity token rejected: %s", exc)
            raise Unauthorized("Identity token could not be verified") from exc
