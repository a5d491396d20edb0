import pytest

from card_pipeline.tags import (
    TagPrefix,
    filter_by_prefix,
    infer_prefix,
    matches_tag_query,
    matches_tag_query_with_synonyms,
    normalize_tag,
    normalize_tags,
    parse_tag,
    synonyms_for,
)


@pytest.mark.parametrize(
    ("tag", "expected"),
    [
        ("GET /users/{id}", TagPrefix.API),
        ("post /login", TagPrefix.API),
        ("/api/orders", TagPrefix.API),
        ("services/v2/billing", TagPrefix.API),
        ("src/cache/lru.go", TagPrefix.FILE),
        ("settings.yaml", TagPrefix.FILE),
        ("user_sessions", TagPrefix.TABLE),
        ("PaymentService", TagPrefix.SERVICE),
        ("OrderRepository", TagPrefix.SERVICE),
        ("caching", TagPrefix.CONCEPT),
        ("", TagPrefix.CONCEPT),
        ("table:anything/with.slash", TagPrefix.TABLE),
    ],
)
def test_infer_prefix(tag: str, expected: TagPrefix) -> None:
    assert infer_prefix(tag) is expected


def test_parse_tag_splits_known_prefix() -> None:
    assert parse_tag("file:src/a.py") == (TagPrefix.FILE, "src/a.py")
    assert parse_tag("unprefixed") == (None, "unprefixed")
    assert parse_tag("url:http://x") == (None, "url:http://x")


def test_normalize_tag_strips_backticks_and_keeps_case() -> None:
    assert normalize_tag("`src/App.tsx`") == "file:src/App.tsx"
    assert normalize_tag("concept:Caching") == "concept:Caching"
    assert normalize_tag("  UserRepository ") == "service:UserRepository"
    assert normalize_tags(["", "``", "audit_log", "  "]) == ["table:audit_log"]


def test_filter_by_prefix() -> None:
    tags = ["file:a.py", "concept:cache", "file:b.go", "plain"]
    assert filter_by_prefix(tags, TagPrefix.FILE) == ["file:a.py", "file:b.go"]
    assert filter_by_prefix(tags, TagPrefix.API) == []


def test_matches_tag_query() -> None:
    tags = ["file:src/Cache.py", "concept:invalidation"]
    assert matches_tag_query(tags, "cache")
    assert matches_tag_query(tags, "file:CACHE")
    assert not matches_tag_query(tags, "table:cache")
    assert matches_tag_query(tags, "file:*")
    assert not matches_tag_query(tags, "service:*")
    assert not matches_tag_query([], "*")
    assert not matches_tag_query(tags, "redis")


def test_synonym_expansion() -> None:
    assert "login" in synonyms_for("Auth")
    assert "auth" not in synonyms_for("auth")
    assert synonyms_for("nothing-like-it") == []

    tags = ["concept:login-flow"]
    assert not matches_tag_query(tags, "auth")
    assert matches_tag_query_with_synonyms(tags, "auth")
    assert matches_tag_query_with_synonyms(tags, "concept:auth")
    assert not matches_tag_query_with_synonyms(tags, "file:auth")
