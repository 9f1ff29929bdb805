"""Repository URL normalization and credential handling."""

import re
from urllib.parse import urlparse

_SSH_URL = re.compile(r"^git@([^:/]+):(.+)$")
_GITHUB_URL = re.compile(
    r"^(https://|git@)github\.com[:/][\w.-]+/[\w.-]+(\.git)?/?$",
    re.IGNORECASE,
)


def is_valid_github_url(url: str) -> bool:
    """Accept https and ssh GitHub remotes of the form owner/name."""
    return bool(_GITHUB_URL.match(url.strip()))


def normalize_repo_url(url: str) -> str:
    """Canonical form used for uniqueness.

    ``git@github.com:Owner/Repo.git`` and ``https://github.com/owner/repo/``
    both become ``https://github.com/owner/repo``.
    """
    normalized = url.strip()
    match = _SSH_URL.match(normalized)
    if match:
        normalized = f"https://{match.group(1)}/{match.group(2)}"
    normalized = normalized.rstrip("/")
    if normalized.lower().endswith(".git"):
        normalized = normalized[: -len(".git")]
    return normalized.rstrip("/").lower()


def repository_key(normalized_url: str) -> str:
    """Storage key for a normalized URL, e.g. ``github.com/owner/repo``."""
    parsed = urlparse(normalized_url)
    path = parsed.path.strip("/")
    if not parsed.netloc or not path or ".." in path.split("/"):
        raise ValueError(f"Cannot derive storage key from {normalized_url!r}")
    return f"{parsed.netloc}/{path}"


def parse_github_owner_name(normalized_url: str) -> tuple[str, str] | None:
    """Return ``(owner, name)`` for github.com URLs, otherwise None."""
    parsed = urlparse(normalized_url)
    if parsed.netloc != "github.com":
        return None
    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


def with_credentials(normalized_url: str, token: str | None) -> str:
    """Embed a token in an https URL for a single git operation."""
    if not token:
        return normalized_url
    parsed = urlparse(normalized_url)
    if parsed.scheme != "https":
        return normalized_url
    return parsed._replace(netloc=f"x-access-token:{token}@{parsed.netloc}").geturl()


def redact(text: str, token: str | None) -> str:
    """Strip a token from git output before it is logged or stored."""
    if token:
        text = text.replace(token, "***")
    return re.sub(r"https://[^/@\s]+@", "https://***@", text)
