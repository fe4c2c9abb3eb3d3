"""Unit tests for ItemIdentity."""

import pytest

from prwatch.core.identity import ItemIdentity, repo_dir_name, repo_from_dir_name


def test_key_round_trips_through_parse():
    identity = ItemIdentity("acme/widgets", 42)

    assert identity.key == "acme/widgets#42"
    assert str(identity) == "acme/widgets#42"
    assert ItemIdentity.parse("acme/widgets#42") == identity


@pytest.mark.parametrize("key", ["acme/widgets", "acme#4", "acme/widgets#x", "a/b/c#1", "acme/widgets#0", ""])
def test_parse_rejects_malformed_keys(key):
    with pytest.raises(ValueError):
        ItemIdentity.parse(key)


def test_constructor_validates_fields():
    with pytest.raises(ValueError):
        ItemIdentity("no-slash", 1)
    with pytest.raises(ValueError):
        ItemIdentity("acme/widgets", 0)


def test_directory_names():
    identity = ItemIdentity("my-org/my_repo", 7)

    assert identity.repo_dir == "my-org_my_repo"
    assert identity.item_dir == "pr-7"
    assert ItemIdentity.from_dirs("my-org_my_repo", "pr-7") == identity


def test_from_dirs_returns_none_for_foreign_entries():
    assert ItemIdentity.from_dirs("acme_widgets", "pr-review-3.md") is None
    assert ItemIdentity.from_dirs("acme_widgets", "notes") is None
    assert ItemIdentity.from_dirs("nounderscore", "pr-3") is None


def test_repo_dir_name_only_replaces_first_slash():
    assert repo_dir_name("acme/widgets") == "acme_widgets"
    assert repo_from_dir_name("acme_my_widgets") == "acme/my_widgets"


def test_identities_are_hashable_and_ordered():
    a = ItemIdentity("acme/widgets", 2)
    b = ItemIdentity("acme/widgets", 10)

    assert {a, ItemIdentity("acme/widgets", 2)} == {a}
    assert sorted([b, a]) == [a, b]
