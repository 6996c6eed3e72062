from rapidfuzz import fuzz, utils

MIN_QUERY_LENGTH = 2
SCORE_CUTOFF = 60
DEFAULT_LIMIT = 50

# Field weights; the title counts most, tags least.
SEARCH_FIELDS = (
    ("title", 0.35),
    ("song_description", 0.25),
    ("music_style", 0.15),
    ("category_names", 0.15),
    ("service_provider", 0.05),
    ("categories", 0.03),
    ("tags", 0.02),
)


def _as_text(value):
    if not value:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(_as_text(v) for v in value)
    if isinstance(value, dict):
        return str(value.get("slug") or value.get("name") or "")
    return str(value)


def searchable_fields(song):
    categories = song.get("categories") or []
    names = [c.get("name", "") if isinstance(c, dict) else str(c) for c in categories]
    return {
        "title": _as_text(song.get("title")),
        "song_description": _as_text(song.get("song_description")),
        "music_style": _as_text(song.get("music_style")),
        "category_names": " ".join(names),
        "service_provider": _as_text(song.get("service_provider")),
        "categories": _as_text(categories),
        "tags": _as_text(song.get("tags")),
    }


class FuzzySongSearch:
    """Weighted fuzzy search over library songs.

    A song qualifies when its best field scores at least ``score_cutoff``;
    qualifying songs are ranked by the weighted sum of all field scores.
    """

    def __init__(self, songs, score_cutoff=SCORE_CUTOFF):
        self.songs = list(songs)
        self.score_cutoff = score_cutoff
        self._fields = [searchable_fields(song) for song in self.songs]

    def score(self, query, fields):
        best = 0
        weighted = 0.0
        for name, weight in SEARCH_FIELDS:
            text = fields[name]
            if not text:
                continue
            s = fuzz.partial_ratio(query, text, processor=utils.default_process)
            best = max(best, s)
            weighted += weight * s
        return best, weighted

    def search(self, query, limit=DEFAULT_LIMIT):
        query = (query or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            return self.songs[:limit]

        ranked = []
        for position, (song, fields) in enumerate(zip(self.songs, self._fields)):
            best, weighted = self.score(query, fields)
            if best >= self.score_cutoff:
                ranked.append((weighted, best, -position, song))

        ranked.sort(key=lambda item: item[:3], reverse=True)
        return [song for *_, song in ranked[:limit]]
