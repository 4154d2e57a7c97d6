"""
Generate the RSA key pair used to sign OAuth tokens.

    python scripts/generate_oauth_keys.py [--force]

Writes keys/private.pem (PKCS8, mode 0600) and keys/public.pem (SPKI).
Replacing the keys invalidates every token signed with the old ones.
"""

import os
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from loguru import logger

from idp.keys import SigningKeys

KEYS_DIR = Path(__file__).resolve().parent.parent / "keys"


def generate_keys(keys_dir: Path = KEYS_DIR, force: bool = False) -> SigningKeys:
    private_path = keys_dir / "private.pem"
    public_path = keys_dir / "public.pem"
    if private_path.exists() and not force:
        raise FileExistsError(f"Keys already exist in {keys_dir}, use --force to overwrite")
    keys_dir.mkdir(parents=True, exist_ok=True)

    keys = SigningKeys.generate(key_size=2048)
    private_pem = keys.private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = keys.public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    private_path.write_bytes(private_pem)
    os.chmod(private_path, 0o600)
    public_path.write_bytes(public_pem)
    return keys


if __name__ == "__main__":
    try:
        keys = generate_keys(force="--force" in sys.argv)
    except FileExistsError as exc:
        logger.error(str(exc))
        sys.exit(1)
    logger.success(f"Generated RSA key pair in {KEYS_DIR} (kid={keys.kid})")
    logger.info(
        "Set IDP_PRIVATE_KEY_PATH / IDP_PUBLIC_KEY_PATH, or keep the default keys/ location"
    )
