"""
RS256 signing keys: JWT signing/verification and the published JWKS.
"""

import hashlib
import json
from functools import lru_cache
from pathlib import Path
from typing import Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from loguru import logger

from idp.config import settings
from idp.constants import SIGNING_ALGORITHM


class KeyConfigurationError(Exception): ...


def _read_pem(inline: Optional[str], path: Optional[str], label: str) -> Optional[bytes]:
    if inline:
        return inline.replace("\\n", "\n").encode()
    if path:
        key_path = Path(path).resolve()
        if not key_path.exists():
            raise KeyConfigurationError(f"{label} key file not found: {key_path}")
        return key_path.read_bytes()
    return None


class SigningKeys:
    """
    Holds the active RSA key pair. Read-only after construction.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey, public_key: rsa.RSAPublicKey):
        self.private_key = private_key
        self.public_key = public_key
        self._public_jwk = json.loads(RSAAlgorithm.to_jwk(public_key))
        self.kid = hashlib.sha256(self._public_jwk["n"].encode()).hexdigest()[:16]

    @classmethod
    def from_settings(cls) -> "SigningKeys":
        private_pem = _read_pem(settings.private_key, settings.private_key_path, "Private")
        if private_pem is None:
            default_path = Path.cwd() / "keys" / "private.pem"
            if default_path.exists():
                private_pem = default_path.read_bytes()
        if private_pem is None:
            if settings.production:
                raise KeyConfigurationError(
                    "OAuth private key not found, set IDP_PRIVATE_KEY or IDP_PRIVATE_KEY_PATH"
                )
            logger.warning("No OAuth signing key configured, generating an ephemeral RSA key")
            return cls.generate()
        try:
            private_key = serialization.load_pem_private_key(private_pem, password=None)
        except ValueError as exc:
            raise KeyConfigurationError(f"Failed to parse private key: {exc}") from exc

        public_pem = _read_pem(settings.public_key, settings.public_key_path, "Public")
        if public_pem:
            public_key = serialization.load_pem_public_key(public_pem)
        else:
            public_key = private_key.public_key()
        return cls(private_key, public_key)

    @classmethod
    def generate(cls, key_size: int = 2048) -> "SigningKeys":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(private_key, private_key.public_key())

    def sign(self, payload: dict) -> str:
        return jwt.encode(
            payload,
            self.private_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self.kid, "typ": "JWT"},
        )

    def verify(
        self, token: str, issuer: Optional[str] = None, audience: Optional[str] = None
    ) -> dict:
        """
        Verify algorithm, kid, signature, expiry and (optionally) issuer/audience.
        Raises jwt.InvalidTokenError on any failure.
        """
        header = jwt.get_unverified_header(token)
        if header.get("alg") != SIGNING_ALGORITHM:
            raise jwt.InvalidAlgorithmError(f"Invalid algorithm: {header.get('alg')}")
        if header.get("kid") != self.kid:
            raise jwt.InvalidTokenError("Key ID mismatch")
        return jwt.decode(
            token,
            self.public_key,
            algorithms=[SIGNING_ALGORITHM],
            issuer=issuer,
            audience=audience,
            options={"verify_aud": audience is not None, "require": ["exp", "iat"]},
        )

    def jwks(self) -> dict:
        return {
            "keys": [
                {
                    "kty": self._public_jwk["kty"],
                    "use": "sig",
                    "alg": SIGNING_ALGORITHM,
                    "kid": self.kid,
                    "n": self._public_jwk["n"],
                    "e": self._public_jwk["e"],
                }
            ]
        }


@lru_cache()
def get_signing_keys() -> SigningKeys:
    return SigningKeys.from_settings()
