import re
from urllib.parse import urlparse

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def normalize_domain(value: str) -> str:
    """Strip the scheme and trailing slashes: ``https://Example.com/`` -> ``example.com``."""
    domain = _SCHEME_RE.sub("", (value or "").strip())
    return domain.rstrip("/").lower()
