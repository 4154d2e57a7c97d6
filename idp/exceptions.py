"""
OAuth 2.0 / OIDC error taxonomy (RFC 6749 section 5.2, RFC 6750 section 3.1).
"""

from typing import Optional
from urllib.parse import urlencode, urlparse, urlunparse, parse_qsl

INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
INVALID_TOKEN = "invalid_token"
UNAUTHORIZED_CLIENT = "unauthorized_client"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
INVALID_SCOPE = "invalid_scope"
ACCESS_DENIED = "access_denied"
CONSENT_REQUIRED = "consent_required"
SERVER_ERROR = "server_error"


def build_redirect(redirect_uri: str, params: dict) -> str:
    """
    Append query parameters to a redirect URI, preserving any it already has.
    """
    parsed = urlparse(redirect_uri)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None and v != "")
    return urlunparse(parsed._replace(query=urlencode(query)))


class OAuthError(Exception):
    """
    Protocol error rendered as a direct JSON response.
    """

    def __init__(
        self,
        error: str,
        description: Optional[str] = None,
        status_code: int = 400,
        headers: Optional[dict] = None,
    ):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status_code = status_code
        self.headers = headers or {}

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class RedirectableOAuthError(OAuthError):
    """
    Authorization endpoint error that is sent back to a trusted redirect_uri.
    """

    def __init__(
        self,
        error: str,
        description: Optional[str],
        redirect_uri: str,
        state: Optional[str] = None,
    ):
        super().__init__(error, description, status_code=302)
        self.redirect_uri = redirect_uri
        self.state = state

    @property
    def location(self) -> str:
        return build_redirect(
            self.redirect_uri,
            {"error": self.error, "error_description": self.description, "state": self.state},
        )


class InvalidClientError(OAuthError):
    def __init__(self, description: str = "Client authentication failed"):
        super().__init__(
            INVALID_CLIENT,
            description,
            status_code=401,
            headers={"WWW-Authenticate": 'Basic realm="oauth"'},
        )


class InvalidTokenError(OAuthError):
    def __init__(self, description: str = "The access token is invalid"):
        super().__init__(
            INVALID_TOKEN,
            description,
            status_code=401,
            headers={"WWW-Authenticate": f'Bearer error="{INVALID_TOKEN}"'},
        )


class InvalidTransition(Exception):
    """
    Client lifecycle transition not permitted from the current status.
    """

    def __init__(self, client_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} client with status: {status}")
        self.client_id = client_id
        self.status = status
        self.action = action
