# pgqueue/core/utils/url.py
"""URL helpers for safe logging and target parsing."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Mask password in a database URL for secure logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
            return urlunparse(parsed._replace(netloc=netloc))
        return url
    except ValueError:
        if '@' not in url:
            return url
        pre, post = url.split('@', 1)
        scheme_user = pre.rsplit(':', 1)[0]
        return f'{scheme_user}:***@{post}'


def is_http_url(target: str) -> bool:
    """Whether ``target`` is an absolute http(s) URL with a host."""
    try:
        parsed = urlparse(target)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def split_function_target(target: str, default_schema: str) -> tuple[str, str]:
    """Split ``schema.name`` into its parts; unqualified names use ``default_schema``."""
    if '.' in target:
        schema, name = target.split('.', 1)
        return schema, name
    return default_schema, target
