"""DATABASE_URL resolution for Alembic.

Kept apart from env.py so it can be imported (and tested) without an
active alembic context. Accepts either a URL or a libpq key=value DSN,
the latter being what Cloud SQL connectors hand out.
"""

from __future__ import annotations

import os
from urllib.parse import quote_plus, urlparse, urlunparse

_SQLALCHEMY_SCHEME = "postgresql+psycopg2://"


def _read_quoted(dsn: str, i: int) -> tuple[str, int]:
    """Read a single-quoted libpq value starting after the opening quote."""
    chars: list[str] = []
    while i < len(dsn):
        ch = dsn[i]
        if ch == "\\" and i + 1 < len(dsn):
            chars.append(dsn[i + 1])
            i += 2
            continue
        i += 1
        if ch == "'":
            break
        chars.append(ch)
    return "".join(chars), i


def _parse_libpq_dsn(dsn: str) -> dict[str, str]:
    """Split ``key=value key='quoted value'`` pairs into a dict."""
    params: dict[str, str] = {}
    i = 0
    while i < len(dsn):
        if dsn[i] == " ":
            i += 1
            continue
        eq = dsn.find("=", i)
        if eq == -1:
            break
        key = dsn[i:eq]
        i = eq + 1
        if i < len(dsn) and dsn[i] == "'":
            value, i = _read_quoted(dsn, i + 1)
        else:
            end = dsn.find(" ", i)
            end = len(dsn) if end == -1 else end
            value, i = dsn[i:end], end
        params[key] = value
    return params


def _libpq_dsn_to_url(dsn: str) -> str:
    """Turn a libpq DSN into a SQLAlchemy URL.

    A ``host`` starting with ``/`` is a unix socket directory and is passed
    as the ``host`` query parameter; anything else becomes HOST:PORT.
    DB_PASSWORD fills in a missing password.
    """
    params = _parse_libpq_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD", "")

    user = quote_plus(params.get("user", ""))
    dbname = quote_plus(params.get("dbname", ""))
    credentials = f"{user}:{quote_plus(password)}"
    host = params.get("host", "localhost")

    if host.startswith("/"):
        return f"{_SQLALCHEMY_SCHEME}{credentials}@/{dbname}?host={quote_plus(host)}"

    port = params.get("port", "5432")
    return f"{_SQLALCHEMY_SCHEME}{credentials}@{host}:{port}/{dbname}"


def _with_password(url: str, password: str) -> str:
    parsed = urlparse(url)
    if parsed.password:
        return url
    netloc = f"{quote_plus(parsed.username or '')}:{quote_plus(password)}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


def _get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in url:
        return _libpq_dsn_to_url(url)

    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            url = _SQLALCHEMY_SCHEME + url[len(prefix):]
            break

    db_password = os.environ.get("DB_PASSWORD", "")
    if db_password:
        url = _with_password(url, db_password)
    return url
