"""OAuth 2.0 token lifecycle: authorization-code flow, refresh and persistence."""
import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

import requests
from google.auth.exceptions import RefreshError
from google.auth.exceptions import TransportError as GoogleTransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from gcal.errors import AuthenticationError, TransportError
from processor.models import StoredCredential
from storage.credential_store import CredentialStoreError

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Authentication Successful! You can close this window."
PROMPT_MESSAGE = "Opening browser for authorization: {url}"


class TokenState(Enum):
    NO_TOKEN = "no_token"
    AUTHORIZING = "authorizing"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class TokenManager:
    """Obtains, caches, refreshes and persists bearer credentials."""

    AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
    TOKEN_URI = "https://oauth2.googleapis.com/token"
    SCOPE = "https://www.googleapis.com/auth/calendar"
    EXPIRY_SKEW = timedelta(seconds=60)
    DEFAULT_LIFETIME = timedelta(hours=1)

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        store,
        redirect_port: int = 8080,
        interactive: bool = True,
        open_browser: bool = True,
        flow_factory: Optional[Callable[[dict, list], InstalledAppFlow]] = None,
        authorization_timeout: Optional[int] = 300,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """
        Initialize the manager and load any persisted credential.

        Args:
            client_id: OAuth client id
            client_secret: OAuth client secret
            store: Credential persistence with load()/save()/clear()
            redirect_port: Port of the loopback redirect server
            interactive: Whether a browser authorization may be started
            open_browser: Open the authorization URL in a browser
            flow_factory: Builds the installed-app flow from a client config and scopes
            authorization_timeout: Seconds to wait for the browser redirect
            session: Optional requests session used for token refresh
            clock: Returns the current aware UTC time
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.store = store
        self.redirect_port = redirect_port
        self.interactive = interactive
        self.open_browser = open_browser
        self.flow_factory = flow_factory or InstalledAppFlow.from_client_config
        self.authorization_timeout = authorization_timeout
        self.session = session or requests.Session()
        self._clock = clock
        self._lock = threading.Lock()
        self._credential = store.load()
        self.state = TokenState.AUTHENTICATED if self._credential else TokenState.NO_TOKEN

    @property
    def client_config(self) -> dict:
        return {
            'installed': {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'auth_uri': self.AUTH_URI,
                'token_uri': self.TOKEN_URI,
                'redirect_uris': ['http://localhost'],
            }
        }

    def get_access_token(self) -> str:
        """
        Return a valid access token, refreshing or authorizing as needed.

        Raises:
            AuthenticationError: If no token can be obtained or the new one cannot be stored
            TransportError: If the token endpoint is unreachable
        """
        with self._lock:
            credential = self._credential
            if credential and credential.expires_at - self.EXPIRY_SKEW > self._clock():
                return credential.access_token

            if credential and credential.refresh_token:
                logger.info("Access token expired, refreshing")
                try:
                    return self._refresh(credential)
                except AuthenticationError:
                    # A cached credential means the refresh worked but storing it failed
                    if not self.interactive or self._credential is not None:
                        raise
                    logger.warning("Refresh rejected, falling back to browser authorization")

            return self._authorize()

    def authorize(self) -> str:
        """Force a fresh interactive authorization."""
        with self._lock:
            return self._authorize()

    def _authorize(self) -> str:
        if not self.interactive:
            self.state = TokenState.NO_TOKEN
            raise AuthenticationError(
                "No usable credential and interactive authorization is disabled"
            )

        self.state = TokenState.AUTHORIZING
        try:
            flow = self.flow_factory(self.client_config, [self.SCOPE])
            # The flow checks the returned state parameter before exchanging the code
            google_credentials = flow.run_local_server(
                port=self.redirect_port,
                open_browser=self.open_browser,
                authorization_prompt_message=PROMPT_MESSAGE,
                success_message=SUCCESS_MESSAGE,
                timeout_seconds=self.authorization_timeout,
                access_type='offline',
                prompt='consent'
            )
        except Exception as e:
            self.state = TokenState.NO_TOKEN
            raise AuthenticationError(
                f"Authorization via local port {self.redirect_port} failed: {e}"
            ) from e

        if google_credentials is None or not google_credentials.refresh_token:
            self.state = TokenState.NO_TOKEN
            raise AuthenticationError("No refresh token received")

        credential = self._store_credential(google_credentials, google_credentials.refresh_token)
        logger.info("Authentication successful")
        return credential.access_token

    def _refresh(self, credential: StoredCredential) -> str:
        google_credentials = Credentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=self.TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=[self.SCOPE]
        )

        self.state = TokenState.REFRESHING
        try:
            google_credentials.refresh(Request(session=self.session))
        except RefreshError as e:
            self._discard_credential()
            raise AuthenticationError(f"Token refresh rejected: {e}") from e
        except GoogleTransportError as e:
            raise TransportError(f"Token endpoint unreachable: {e}") from e
        finally:
            if self.state == TokenState.REFRESHING:
                self.state = TokenState.AUTHENTICATED

        refreshed = self._store_credential(
            google_credentials, google_credentials.refresh_token or credential.refresh_token
        )
        logger.info("Access token refreshed")
        return refreshed.access_token

    def _store_credential(self, google_credentials, refresh_token: str) -> StoredCredential:
        """
        Cache the new credential and write it to the store.

        Raises:
            AuthenticationError: If the store rejects the write
        """
        expiry = google_credentials.expiry
        if expiry is None:
            expires_at = self._clock() + self.DEFAULT_LIFETIME
        elif expiry.tzinfo is None:
            # google-auth reports expiry as naive UTC
            expires_at = expiry.replace(tzinfo=timezone.utc)
        else:
            expires_at = expiry.astimezone(timezone.utc)

        credential = StoredCredential(
            access_token=google_credentials.token,
            refresh_token=refresh_token,
            expires_at=expires_at
        )
        self._credential = credential
        self.state = TokenState.AUTHENTICATED
        try:
            self.store.save(credential)
        except (CredentialStoreError, OSError) as e:
            logger.error(f"Failed to persist credential: {e}")
            raise AuthenticationError(f"Credential could not be persisted: {e}") from e
        return credential

    def _discard_credential(self) -> None:
        """Forget a credential whose refresh token was rejected."""
        self._credential = None
        self.state = TokenState.NO_TOKEN
        try:
            self.store.clear()
        except (CredentialStoreError, OSError) as e:
            logger.error(f"Failed to remove rejected credential: {e}")
