"""Operator API key generation, hashing and verification."""

import hashlib
import hmac
import secrets

API_KEY_PREFIX = "mexp_"
API_KEY_LENGTH = 32  # bytes of entropy

# Keys are high-entropy random strings, so a fixed HMAC key is enough
_HASH_SECRET = b"market-experiments-operator-key-v1"


def generate_api_key() -> str:
    """New operator key in the form ``mexp_<64 hex chars>``."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(API_KEY_LENGTH)}"


def hash_api_key(api_key: str) -> str:
    """Hex HMAC-SHA256 of a key; this is what goes into configuration."""
    return hmac.new(_HASH_SECRET, api_key.encode("utf-8"), hashlib.sha256).hexdigest()


def is_valid_api_key_format(api_key: str) -> bool:
    return (
        api_key.startswith(API_KEY_PREFIX)
        and len(api_key) == len(API_KEY_PREFIX) + API_KEY_LENGTH * 2
    )


def verify_api_key(plain_key: str, hashed_key: str) -> bool:
    """Constant-time check of a presented key against the configured hash.

    An empty configured hash never matches, so operator endpoints stay
    closed until a key is provisioned.
    """
    if not hashed_key or not is_valid_api_key_format(plain_key):
        return False
    return hmac.compare_digest(hash_api_key(plain_key), hashed_key)


def create_api_key() -> tuple[str, str]:
    """Generate a key and its hash. Show the key once; store only the hash."""
    key = generate_api_key()
    return key, hash_api_key(key)
