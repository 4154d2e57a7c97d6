"""
OAuth 2.1 / OpenID Connect identity provider core.

Authorization code flow with mandatory PKCE, refresh token rotation with
reuse detection, consent management and OAuth client lifecycle.
"""
