"""Semantic tag prefixes for capsules (``file:``, ``table:``, ``service:``, ``concept:``, ``api:``)."""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable


class TagPrefix(str, Enum):
    FILE = "file:"
    TABLE = "table:"
    SERVICE = "service:"
    CONCEPT = "concept:"
    API = "api:"


_HTTP_METHODS = ("GET ", "POST ", "PUT ", "DELETE ", "PATCH ", "HEAD ", "OPTIONS ")
_API_SEGMENTS = ("/api/", "/v1/", "/v2/")
_FILE_EXTENSIONS = (
    ".ts", ".tsx", ".js", ".jsx", ".go", ".py", ".rs", ".java", ".rb", ".php", ".cs", ".cpp",
    ".c", ".h", ".swift", ".kt", ".scala", ".vue", ".svelte", ".md", ".yaml", ".yml", ".json",
    ".toml", ".sql",
)
_SNAKE_CASE_RE = re.compile(r"^[a-z][a-z0-9]*(_[a-z0-9]+)+$")
_SERVICE_SUFFIXES = (
    "Service", "Controller", "Handler", "Repository", "Manager", "Provider", "Factory", "Client",
    "Adapter", "Gateway", "Middleware", "Guard", "Interceptor", "Resolver",
)

_SYNONYM_GROUPS: tuple[tuple[str, ...], ...] = (
    ("auth", "authentication", "login", "signin", "sign-in", "oauth", "jwt", "token"),
    ("authz", "authorization", "permission", "permissions", "access", "access-control", "rbac", "acl"),
    ("db", "database", "sql", "postgres", "postgresql", "mysql", "sqlite", "mongo", "mongodb"),
    ("api", "endpoint", "endpoints", "route", "routes", "handler", "handlers", "controller"),
    ("test", "tests", "testing", "unit", "integration", "e2e"),
    ("config", "configuration", "settings", "options", "preferences", "env", "environment"),
    ("cache", "caching", "redis", "memcache", "memoize", "memoization"),
    ("queue", "queues", "job", "jobs", "worker", "workers", "async", "background"),
    ("log", "logging", "logger", "logs", "debug", "trace", "audit"),
    ("error", "errors", "exception", "exceptions", "failure", "failures", "handling"),
    ("validate", "validation", "validator", "validators", "schema", "sanitize"),
)


def parse_tag(tag: str) -> tuple[TagPrefix | None, str]:
    for prefix in TagPrefix:
        if tag.startswith(prefix.value):
            return prefix, tag[len(prefix.value) :]
    return None, tag


def infer_prefix(tag: str) -> TagPrefix:
    """Guess the semantic prefix for an untyped tag.

    API routes are checked before files since both can contain ``/``.
    """
    prefix, _ = parse_tag(tag)
    if prefix is not None:
        return prefix
    value = tag.strip()
    if not value:
        return TagPrefix.CONCEPT

    upper = value.upper()
    if any(upper.startswith(method) for method in _HTTP_METHODS):
        return TagPrefix.API
    if any(segment in value for segment in _API_SEGMENTS):
        return TagPrefix.API

    if "/" in value or value.lower().endswith(_FILE_EXTENSIONS):
        return TagPrefix.FILE

    if _SNAKE_CASE_RE.match(value):
        return TagPrefix.TABLE

    if value[0].isupper() and value.endswith(_SERVICE_SUFFIXES):
        return TagPrefix.SERVICE
    return TagPrefix.CONCEPT


def normalize_tag(tag: str) -> str:
    """Strip markdown backticks and add the inferred prefix when missing."""
    cleaned = tag.strip().strip("`")
    prefix, _ = parse_tag(cleaned)
    if prefix is not None:
        return cleaned
    return f"{infer_prefix(cleaned).value}{cleaned}"


def normalize_tags(tags: Iterable[str]) -> list[str]:
    return [normalize_tag(tag) for tag in tags if tag.strip().strip("`")]


def filter_by_prefix(tags: Iterable[str], prefix: TagPrefix) -> list[str]:
    return [tag for tag in tags if parse_tag(tag)[0] is prefix]


def synonyms_for(word: str) -> list[str]:
    lowered = word.lower()
    for group in _SYNONYM_GROUPS:
        if lowered in group:
            return [term for term in group if term != lowered]
    return []


def matches_tag_query(tags: Iterable[str], query: str) -> bool:
    """Substring match on tag values; a prefixed query only matches tags with that prefix.

    A bare ``*`` value (``file:*``) matches every tag carrying the prefix.
    """
    query_prefix, query_value = parse_tag(query)
    needle = "" if query_value == "*" else query_value.lower()
    for tag in tags:
        tag_prefix, tag_value = parse_tag(tag)
        if query_prefix is not None and tag_prefix is not query_prefix:
            continue
        if needle in tag_value.lower():
            return True
    return False


def matches_tag_query_with_synonyms(tags: Iterable[str], query: str) -> bool:
    tag_list = list(tags)
    if matches_tag_query(tag_list, query):
        return True
    query_prefix, query_value = parse_tag(query)
    prefix_text = query_prefix.value if query_prefix is not None else ""
    return any(matches_tag_query(tag_list, f"{prefix_text}{synonym}") for synonym in synonyms_for(query_value))
