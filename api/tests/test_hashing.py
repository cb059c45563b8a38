from datetime import datetime, timezone

from catalog_sync.core.hashing import canonical_json, content_hash


def test_hash_ignores_key_order_and_volatile_fields() -> None:
    left = {"name": "Aurora MR", "specs": {"size": "small", "role": "starter"}, "image_url": "a.png"}
    right = {"specs": {"role": "starter", "size": "small"}, "name": "Aurora MR", "image_url": "b.png"}

    assert content_hash(left) == content_hash(right)


def test_hash_drops_volatile_keys_at_every_level() -> None:
    base = {"raw_payloads": {"wiki": {"name": "Cutlass Black", "image_url": "x"}}}
    changed = {"raw_payloads": {"wiki": {"name": "Cutlass Black", "image_url": "y", "fetched_at": "now"}}}

    assert content_hash(base) == content_hash(changed)


def test_hash_changes_with_substantive_fields() -> None:
    assert content_hash({"cargo": {"scu": 46}}) != content_hash({"cargo": {"scu": 48}})


def test_canonical_json_serializes_datetimes_and_custom_exclusions() -> None:
    published = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
    rendered = canonical_json({"published": published, "title": "Patch 4.1", "ignored": 1}, excluded_fields={"ignored"})

    assert rendered == '{"published":"2026-03-01T09:30:00+00:00","title":"Patch 4.1"}'
