from search import FuzzySongSearch, searchable_fields

SONGS = [
    {"id": 1, "slug": "happy-birthday-maya", "title": "Happy Birthday Maya", "song_description": "For my sister",
     "music_style": "Acoustic Pop", "categories": [{"name": "Birthday", "slug": "birthday"}], "tags": ["family"]},
    {"id": 2, "slug": "monsoon-nights", "title": "Monsoon Nights", "song_description": "Rain on the terrace",
     "music_style": "Jazz", "categories": [], "tags": ["rain"]},
    {"id": 3, "slug": "our-anniversary", "title": "Our Anniversary", "song_description": "Ten years of jazz evenings",
     "music_style": "Smooth Jazz", "categories": ["love"], "tags": []},
]


def titles(results):
    return [song["title"] for song in results]


def test_title_match():
    assert titles(FuzzySongSearch(SONGS).search("monsoon")) == ["Monsoon Nights"]


def test_matches_category_names():
    assert "Happy Birthday Maya" in titles(FuzzySongSearch(SONGS).search("birthday"))


def test_weighted_ranking_prefers_style_over_description():
    results = titles(FuzzySongSearch(SONGS).search("jazz"))
    assert results[:2] == ["Our Anniversary", "Monsoon Nights"]


def test_short_or_blank_query_returns_everything():
    search = FuzzySongSearch(SONGS)
    assert len(search.search("j")) == 3
    assert len(search.search("   ")) == 3
    assert len(search.search("", limit=2)) == 2


def test_no_match():
    assert FuzzySongSearch(SONGS).search("zzzzqqq") == []


def test_searchable_fields_flattens_categories():
    fields = searchable_fields(SONGS[0])
    assert fields["category_names"] == "Birthday"
    assert fields["categories"] == "birthday"
    assert fields["tags"] == "family"
