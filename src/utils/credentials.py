"""Credential, naming and formatting helpers."""
import hashlib
import re
import secrets
import string

PASSWORD_ALPHABET = string.ascii_letters + string.digits
SLUG_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_password(length: int = 32) -> str:
    """Generate a random password from a CSPRNG."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def pgbouncer_md5(password: str, user: str = "postgres") -> str:
    """PgBouncer userlist md5 form: 'md5' + md5(password + user)."""
    return "md5" + hashlib.md5((password + user).encode()).hexdigest()


def slugify(name: str, suffix_length: int = 6) -> str:
    """Turn a cluster name into a DNS-safe slug with a random suffix.

    Example: "My Cluster!" -> "my-cluster-x3k9ab"
    """
    base = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    base = re.sub(r"-{2,}", "-", base)[:40].rstrip("-") or "cluster"
    suffix = "".join(secrets.choice(SLUG_SUFFIX_ALPHABET) for _ in range(suffix_length))
    return f"{base}-{suffix}"


def format_bytes(size: int | None) -> str:
    """Human readable byte count (1024 based)."""
    if not size:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"
