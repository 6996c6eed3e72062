import pytest

from song_store import generate_base_slug, generate_unique_slug, is_valid_slug, update_song


@pytest.mark.parametrize("title, expected", [
    ("Happy Birthday, Maya!", "happy-birthday-maya"),
    ("  Rock_and   Roll -- Forever ", "rock-and-roll-forever"),
    ("!!!", "song"),
    ("", "song"),
    (None, "song"),
    ("a" * 80, "a" * 50),
])
def test_base_slug(title, expected):
    assert generate_base_slug(title) == expected


@pytest.mark.parametrize("slug, valid", [
    ("happy-birthday", True),
    ("song-2", True),
    ("Happy", False),
    ("double--hyphen", False),
    ("-leading", False),
    ("under_score", False),
    ("a" * 101, False),
    ("", False),
])
def test_is_valid_slug(slug, valid):
    assert is_valid_slug(slug) is valid


def test_unique_slug_counts_up_and_reserves_deleted(app, make_song):
    first = make_song(title="Lullaby")
    second = make_song(title="Lullaby")
    assert (first["slug"], second["slug"]) == ("lullaby", "lullaby-1")

    with app.app_context():
        update_song(first["id"], is_deleted=1)
        assert generate_unique_slug("lullaby") == "lullaby-2"
        assert generate_unique_slug("  ") == "song"
