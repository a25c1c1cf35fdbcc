import base64
import hashlib
import hmac
import secrets

PBKDF2_ROUNDS = 120_000
HASH_SCHEME = "pbkdf2_sha256"


def hash_password(password: str, salt: str | None = None, rounds: int = PBKDF2_ROUNDS) -> str:
    if salt is None:
        salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), rounds)
    encoded = base64.b64encode(digest).decode("ascii")
    return f"{HASH_SCHEME}${salt}${encoded}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, salt, _ = (stored or "").split("$", 2)
    except ValueError:
        return False
    if scheme != HASH_SCHEME:
        return False
    return hmac.compare_digest(hash_password(password, salt), stored)


def new_session_token() -> str:
    """Login cookie value."""
    return secrets.token_urlsafe(32)


def new_join_token() -> str:
    """Retrospective session name carried in join URLs (URL-safe, no padding)."""
    return secrets.token_urlsafe(18)
