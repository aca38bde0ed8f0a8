"""Random identifiers and content hashing."""

import hashlib
import secrets
import string


def random_id(length: int = 16) -> str:
    """Generate a cryptographically secure random ID."""
    if length <= 0:
        raise ValueError("Length must be positive")
    alphabet = string.ascii_lowercase + string.digits
    return "".join((secrets.choice(alphabet) for _ in range(length)))


def new_hasher(algorithm: str = "sha512") -> "hashlib._Hash":
    try:
        return hashlib.new(algorithm)
    except ValueError as e:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}") from e


def checksums_equal(expected: str, actual: str) -> bool:
    """Case-insensitive constant-time comparison of hex digests."""
    return secrets.compare_digest(expected.strip().lower(), actual.strip().lower())
