import re
import time

from database import dump_json, get_db, row_to_dict, utcnow

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
MAX_SLUG_ATTEMPTS = 1000


# Slugs

def generate_base_slug(title):
    if not title or not isinstance(title, str):
        return "song"
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    slug = slug.strip("-")[:50]
    return slug or "song"


def generate_unique_slug(base_slug):
    if not base_slug or not base_slug.strip():
        base_slug = "song"
    slug = base_slug
    for counter in range(1, MAX_SLUG_ATTEMPTS + 1):
        # Deleted songs keep their slug reserved.
        if get_song_by_slug(slug, include_deleted=True) is None:
            return slug
        slug = f"{base_slug}-{counter}"
    return f"{base_slug}-{int(time.time() * 1000)}"


def is_valid_slug(slug):
    if not slug or not isinstance(slug, str):
        return False
    return bool(SLUG_PATTERN.match(slug)) and len(slug) <= 100


# Song requests

def create_song_request(data, user_id=None, anonymous_user_id=None):
    db = get_db()
    now = utcnow()
    cursor = db.execute(
        """INSERT INTO song_requests (user_id, anonymous_user_id, requester_name, recipient_details, occasion,
                                      languages, mood, song_story, mobile_number, email, status,
                                      created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
        (
            user_id,
            anonymous_user_id,
            data["requester_name"],
            data["recipient_details"],
            data.get("occasion"),
            data["languages"],
            dump_json(data.get("mood") or []),
            data.get("song_story"),
            data.get("mobile_number"),
            data.get("email"),
            now,
            now,
        ),
    )
    db.commit()
    return get_song_request(cursor.lastrowid)


def get_song_request(request_id):
    row = get_db().execute("SELECT * FROM song_requests WHERE id = ?", (request_id,)).fetchone()
    return row_to_dict(row)


def update_song_request_status(request_id, status):
    db = get_db()
    db.execute("UPDATE song_requests SET status = ?, updated_at = ? WHERE id = ?", (status, utcnow(), request_id))
    db.commit()


def owns_request(song_request, user_id=None, anonymous_user_id=None):
    if song_request is None:
        return False
    if user_id is not None and song_request["user_id"] == user_id:
        return True
    if anonymous_user_id and song_request["anonymous_user_id"] == anonymous_user_id:
        return True
    return False


# Lyrics drafts

def get_lyrics_drafts(request_id):
    rows = get_db().execute(
        "SELECT * FROM lyrics_drafts WHERE song_request_id = ? ORDER BY version DESC", (request_id,)
    ).fetchall()
    return [row_to_dict(r) for r in rows]


def get_latest_lyrics_draft(request_id):
    drafts = get_lyrics_drafts(request_id)
    return drafts[0] if drafts else None


def get_lyrics_draft(draft_id):
    row = get_db().execute("SELECT * FROM lyrics_drafts WHERE id = ?", (draft_id,)).fetchone()
    return row_to_dict(row)


def create_lyrics_draft(request_id, lyrics, title=None, music_style=None, language=None, prompt=None, model_name=None):
    db = get_db()
    latest = db.execute(
        "SELECT MAX(version) AS version FROM lyrics_drafts WHERE song_request_id = ?", (request_id,)
    ).fetchone()
    version = (latest["version"] or 0) + 1
    now = utcnow()
    cursor = db.execute(
        """INSERT INTO lyrics_drafts (song_request_id, version, generated_text, song_title, music_style, language,
                                      prompt, model_name, status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?)""",
        (request_id, version, lyrics, title, music_style, language, prompt, model_name, now, now),
    )
    db.commit()
    return get_lyrics_draft(cursor.lastrowid)


def approve_lyrics_draft(draft_id, request_id):
    db = get_db()
    now = utcnow()
    db.execute("UPDATE lyrics_drafts SET status = 'approved', updated_at = ? WHERE id = ?", (now, draft_id))
    db.execute(
        """UPDATE lyrics_drafts SET status = 'archived', updated_at = ?
           WHERE song_request_id = ? AND id != ? AND status != 'approved'""",
        (now, request_id, draft_id),
    )
    db.commit()
    return get_lyrics_draft(draft_id)


# Songs

def create_song(data):
    db = get_db()
    now = utcnow()
    cursor = db.execute(
        """INSERT INTO songs (song_request_id, approved_lyrics_id, title, slug, lyrics, music_style,
                              song_description, categories, tags, status, suno_task_id, song_variants,
                              metadata, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            data.get("song_request_id"),
            data.get("approved_lyrics_id"),
            data["title"],
            data["slug"],
            data.get("lyrics"),
            data.get("music_style"),
            data.get("song_description"),
            dump_json(data.get("categories") or []),
            dump_json(data.get("tags") or []),
            data.get("status", "PENDING"),
            data.get("suno_task_id"),
            dump_json(data.get("song_variants") or []),
            dump_json(data.get("metadata") or {}),
            now,
            now,
        ),
    )
    db.commit()
    return get_song(cursor.lastrowid)


def get_song(song_id):
    row = get_db().execute("SELECT * FROM songs WHERE id = ?", (song_id,)).fetchone()
    return row_to_dict(row)


def get_song_by_slug(slug, include_deleted=False):
    query = "SELECT * FROM songs WHERE slug = ?"
    if not include_deleted:
        query += " AND is_deleted = 0"
    return row_to_dict(get_db().execute(query, (slug,)).fetchone())


def get_song_by_task_id(task_id):
    row = get_db().execute(
        "SELECT * FROM songs WHERE suno_task_id = ? ORDER BY id DESC LIMIT 1", (task_id,)
    ).fetchone()
    return row_to_dict(row)


def get_song_by_request(request_id):
    row = get_db().execute(
        "SELECT * FROM songs WHERE song_request_id = ? AND is_deleted = 0 ORDER BY id DESC LIMIT 1", (request_id,)
    ).fetchone()
    return row_to_dict(row)


def list_library_songs():
    rows = get_db().execute(
        """SELECT * FROM songs WHERE is_deleted = 0 AND add_to_library = 1 AND status = 'COMPLETED'
           ORDER BY created_at DESC"""
    ).fetchall()
    return [row_to_dict(r) for r in rows]


def list_featured_songs():
    rows = get_db().execute(
        "SELECT * FROM songs WHERE is_deleted = 0 AND is_featured = 1 ORDER BY created_at DESC, id DESC"
    ).fetchall()
    return [row_to_dict(r) for r in rows]


def list_categories():
    """Categories used by library songs, with how many songs carry each."""
    counts = {}
    for song in list_library_songs():
        for category in song.get("categories") or []:
            if isinstance(category, dict):
                name = category.get("name") or category.get("slug")
                slug = category.get("slug") or generate_base_slug(name)
            else:
                name, slug = str(category), generate_base_slug(str(category))
            if not name:
                continue
            entry = counts.setdefault(slug, {"name": name, "slug": slug, "songCount": 0})
            entry["songCount"] += 1
    return sorted(counts.values(), key=lambda c: c["name"].lower())


SONG_UPDATE_COLUMNS = {
    "status",
    "song_url",
    "duration",
    "suno_task_id",
    "song_variants",
    "selected_variant",
    "timestamped_lyrics_variants",
    "error_message",
    "is_deleted",
    "add_to_library",
    "is_featured",
    "metadata",
}


def _write_song(song_id, fields, condition=""):
    unknown = set(fields) - SONG_UPDATE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown song columns: {sorted(unknown)}")

    values = []
    assignments = []
    for column, value in fields.items():
        if column in ("song_variants", "timestamped_lyrics_variants", "metadata"):
            value = dump_json(value)
        assignments.append(f"{column} = ?")
        values.append(value)
    assignments.append("updated_at = ?")
    values.append(utcnow())
    values.append(song_id)

    db = get_db()
    cursor = db.execute(f"UPDATE songs SET {', '.join(assignments)} WHERE id = ?{condition}", values)
    db.commit()
    return cursor.rowcount


def update_song(song_id, **fields):
    if fields:
        _write_song(song_id, fields)
    return get_song(song_id)


def update_active_song(song_id, **fields):
    """Update a song only while it is not COMPLETED or FAILED.

    Returns the updated row, or None when the song had already finished.
    """
    if not _write_song(song_id, fields, " AND status NOT IN ('COMPLETED', 'FAILED')"):
        return None
    return get_song(song_id)


def record_status_check(song_id):
    db = get_db()
    db.execute(
        "UPDATE songs SET status_check_count = status_check_count + 1, last_status_check = ? WHERE id = ?",
        (utcnow(), song_id),
    )
    db.commit()
