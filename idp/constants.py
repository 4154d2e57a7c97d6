"""
Protocol constants shared across the IDP.
"""

SIGNING_ALGORITHM = "RS256"

# Token type markers (token_type claim / introspection hints).
TOKEN_TYPE_ACCESS = "access_token"
TOKEN_TYPE_REFRESH = "refresh_token"

# Scopes.
SCOPE_OPENID = "openid"
SCOPE_PROFILE = "profile"
SCOPE_EMAIL = "email"
SCOPE_OFFLINE_ACCESS = "offline_access"
SUPPORTED_SCOPES = (SCOPE_OPENID, SCOPE_PROFILE, SCOPE_EMAIL, SCOPE_OFFLINE_ACCESS)
DEFAULT_CLIENT_SCOPES = [SCOPE_OPENID, SCOPE_PROFILE, SCOPE_EMAIL]

# Flows.
RESPONSE_TYPES_SUPPORTED = ("code",)
GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN)
PKCE_METHODS = ("S256",)
TOKEN_ENDPOINT_AUTH_METHODS = ("client_secret_basic", "client_secret_post")
PROMPT_VALUES = ("none", "login", "consent")

# Request parameter limits.
MAX_STATE_LENGTH = 500
MAX_NONCE_LENGTH = 200
MIN_PKCE_LENGTH = 43
MAX_PKCE_LENGTH = 128
MAX_REDIRECT_URIS = 10

# Opaque credential prefixes.
CLIENT_ID_PREFIX = "cid_"
CLIENT_SECRET_PREFIX = "csc_"
REFRESH_TOKEN_PREFIX = "ort_"

# Redis keys.
PENDING_AUTH_KEY = "idp:pending_auth:{pending_id}"

# Refresh token revocation reasons.
REVOKE_USER_LOGOUT = "user_logout"
REVOKE_USER_REVOKED = "user_revoked"
REVOKE_TOKEN_REUSE = "token_reuse"
REVOKE_CLIENT_DELETED = "client_deleted"
REVOKE_EXPIRED = "expired"

# Security event names.
SECURITY_EVENT_REFRESH_REUSE = "refresh_token_reuse"
SECURITY_EVENT_PKCE_FAILURE = "pkce_verification_failed"

# Cache headers.
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}
DISCOVERY_CACHE_CONTROL = "public, max-age=3600"
JWKS_CACHE_CONTROL = "public, max-age=900"
