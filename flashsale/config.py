"""Service configuration read from environment variables."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_DURATION_PART = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_NANOS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_MAX_NANOS = (1 << 63) - 1

DEFAULT_PG_USER = "postgres"
DEFAULT_PG_PASSWORD = "password"


def parse_bool(text: str) -> bool:
    """Parse a boolean the way the service's environment expects."""
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean: {text!r}")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"300ms"``, ``"-1.5h"`` or ``"2h45m"``."""
    invalid = ValueError(f'time: invalid duration "{text}"')
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise invalid

    total = 0
    position = 0
    while position < len(rest):
        match = _DURATION_PART.match(rest, position)
        whole, fraction, unit = match.group(1), match.group(2) or "", match.group(3)
        if not whole and not fraction:
            raise invalid
        if not unit:
            raise ValueError(f'time: missing unit in duration "{text}"')
        if unit not in _NANOS_PER_UNIT:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{text}"')
        scale = _NANOS_PER_UNIT[unit]
        nanos = int(whole or "0") * scale
        if fraction:
            nanos += int(fraction) * scale // 10 ** len(fraction)
        total += nanos
        if total > _MAX_NANOS and not (negative and total == _MAX_NANOS + 1):
            raise invalid
        position = match.end()

    micros = total // 1_000
    return timedelta(microseconds=-micros if negative else micros)


class _Environment:
    """Typed lookups over an environment mapping; empty values count as unset."""

    def __init__(self, environ: Mapping[str, str]) -> None:
        self._environ = environ

    def text(self, key: str, default: str) -> str:
        return self._environ.get(key) or default

    def integer(self, key: str, default: int) -> int:
        value = self._environ.get(key)
        if value and _INT_PATTERN.fullmatch(value):
            return int(value)
        return default

    def duration(self, key: str, default: timedelta) -> timedelta:
        value = self._environ.get(key)
        if not value:
            return default
        try:
            return parse_duration(value)
        except ValueError:
            return default

    def flag(self, key: str, default: bool) -> bool:
        value = self._environ.get(key)
        if not value:
            return default
        try:
            return parse_bool(value)
        except ValueError:
            return default


@dataclass(frozen=True)
class Config:
    """Settings for the HTTP server, PostgreSQL and Redis."""

    port: str
    postgres_url: str
    redis_addr: str

    db_max_open_conns: int = 100
    db_max_idle_conns: int = 25
    db_conn_max_lifetime: timedelta = timedelta(minutes=15)
    db_conn_max_idle_time: timedelta = timedelta(minutes=5)

    redis_pool_size: int = 100
    redis_min_idle_conns: int = 10
    redis_max_retries: int = 3
    redis_dial_timeout: timedelta = timedelta(seconds=5)
    redis_read_timeout: timedelta = timedelta(seconds=3)
    redis_write_timeout: timedelta = timedelta(seconds=3)
    redis_pool_timeout: timedelta = timedelta(seconds=4)

    server_read_timeout: timedelta = timedelta(seconds=5)
    server_write_timeout: timedelta = timedelta(seconds=10)
    server_idle_timeout: timedelta = timedelta(seconds=120)
    server_shutdown_timeout: timedelta = timedelta(seconds=20)

    request_timeout: timedelta = timedelta(seconds=5)
    max_concurrent_reqs: int = 1000
    enable_request_logger: bool = False


def load_config(environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from ``environ`` (the process environment by default)."""
    env = _Environment(os.environ if environ is None else environ)

    pg_user = env.text("PG_USER", DEFAULT_PG_USER)
    pg_credential = env.text("PG_PASSWORD", DEFAULT_PG_PASSWORD)
    pg_host = env.text("PG_HOST", "localhost")
    pg_port = env.text("PG_PORT", "5433")
    pg_db = env.text("PG_DB", "app")
    postgres_url = (
        f"postgres://{pg_user}:{pg_credential}@{pg_host}:{pg_port}/{pg_db}?sslmode=disable"
    )

    redis_host = env.text("REDIS_HOST", "localhost")
    redis_port = env.text("REDIS_PORT", "6379")

    defaults = Config(port="", postgres_url="", redis_addr="")
    return Config(
        port=env.text("PORT", "8080"),
        postgres_url=postgres_url,
        redis_addr=f"{redis_host}:{redis_port}",
        db_max_open_conns=env.integer("DB_MAX_OPEN_CONNS", defaults.db_max_open_conns),
        db_max_idle_conns=env.integer("DB_MAX_IDLE_CONNS", defaults.db_max_idle_conns),
        db_conn_max_lifetime=env.duration(
            "DB_CONN_MAX_LIFETIME", defaults.db_conn_max_lifetime
        ),
        db_conn_max_idle_time=env.duration(
            "DB_CONN_MAX_IDLE_TIME", defaults.db_conn_max_idle_time
        ),
        redis_pool_size=env.integer("REDIS_POOL_SIZE", defaults.redis_pool_size),
        redis_min_idle_conns=env.integer(
            "REDIS_MIN_IDLE_CONNS", defaults.redis_min_idle_conns
        ),
        redis_max_retries=env.integer("REDIS_MAX_RETRIES", defaults.redis_max_retries),
        redis_dial_timeout=env.duration("REDIS_DIAL_TIMEOUT", defaults.redis_dial_timeout),
        redis_read_timeout=env.duration("REDIS_READ_TIMEOUT", defaults.redis_read_timeout),
        redis_write_timeout=env.duration(
            "REDIS_WRITE_TIMEOUT", defaults.redis_write_timeout
        ),
        redis_pool_timeout=env.duration("REDIS_POOL_TIMEOUT", defaults.redis_pool_timeout),
        server_read_timeout=env.duration(
            "SERVER_READ_TIMEOUT", defaults.server_read_timeout
        ),
        server_write_timeout=env.duration(
            "SERVER_WRITE_TIMEOUT", defaults.server_write_timeout
        ),
        server_idle_timeout=env.duration(
            "SERVER_IDLE_TIMEOUT", defaults.server_idle_timeout
        ),
        server_shutdown_timeout=env.duration(
            "SERVER_SHUTDOWN_TIMEOUT", defaults.server_shutdown_timeout
        ),
        request_timeout=env.duration("REQUEST_TIMEOUT", defaults.request_timeout),
        max_concurrent_reqs=env.integer(
            "MAX_CONCURRENT_REQS", defaults.max_concurrent_reqs
        ),
        enable_request_logger=env.flag(
            "ENABLE_REQUEST_LOGGER", defaults.enable_request_logger
        ),
    )