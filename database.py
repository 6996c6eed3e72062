import json
import sqlite3
from datetime import datetime, timezone

from flask import current_app, g

# Columns holding JSON documents, decoded when rows are read back.
JSON_COLUMNS = {
    "mood",
    "categories",
    "tags",
    "song_variants",
    "timestamped_lyrics_variants",
    "metadata",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    email_verified INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS verification_codes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    purpose TEXT NOT NULL,
    code TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS anonymous_users (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS song_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER REFERENCES users(id),
    anonymous_user_id TEXT REFERENCES anonymous_users(id),
    requester_name TEXT NOT NULL,
    recipient_details TEXT NOT NULL,
    occasion TEXT,
    languages TEXT NOT NULL,
    mood TEXT,
    song_story TEXT,
    mobile_number TEXT,
    email TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS lyrics_drafts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    song_request_id INTEGER NOT NULL REFERENCES song_requests(id),
    version INTEGER NOT NULL,
    generated_text TEXT NOT NULL,
    song_title TEXT,
    music_style TEXT,
    language TEXT,
    prompt TEXT,
    model_name TEXT,
    status TEXT NOT NULL DEFAULT 'draft',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (song_request_id, version)
);

CREATE TABLE IF NOT EXISTS songs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    song_request_id INTEGER REFERENCES song_requests(id),
    approved_lyrics_id INTEGER REFERENCES lyrics_drafts(id),
    title TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    lyrics TEXT,
    music_style TEXT,
    song_description TEXT,
    service_provider TEXT DEFAULT 'Melodia',
    categories TEXT,
    tags TEXT,
    song_url TEXT,
    duration INTEGER,
    status TEXT NOT NULL DEFAULT 'PENDING',
    suno_task_id TEXT,
    song_variants TEXT,
    selected_variant INTEGER,
    timestamped_lyrics_variants TEXT,
    add_to_library INTEGER NOT NULL DEFAULT 1,
    is_featured INTEGER NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    status_check_count INTEGER NOT NULL DEFAULT 0,
    last_status_check TEXT,
    error_message TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_songs_task_id ON songs(suno_task_id);
CREATE INDEX IF NOT EXISTS idx_songs_request_id ON songs(song_request_id);

CREATE TABLE IF NOT EXISTS payments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    song_request_id INTEGER REFERENCES song_requests(id),
    user_id INTEGER REFERENCES users(id),
    anonymous_user_id TEXT,
    razorpay_order_id TEXT UNIQUE,
    razorpay_payment_id TEXT,
    amount REAL NOT NULL,
    currency TEXT NOT NULL DEFAULT 'INR',
    status TEXT NOT NULL DEFAULT 'pending',
    payment_method TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def utcnow():
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value):
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dump_json(value):
    if value is None:
        return None
    return json.dumps(value)


def row_to_dict(row):
    """Convert a sqlite3.Row into a plain dict, decoding JSON columns."""
    if row is None:
        return None
    data = dict(row)
    for key in JSON_COLUMNS.intersection(data):
        if data[key]:
            data[key] = json.loads(data[key])
    return data


# Get DB connection using Flask's g context
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(current_app.config["DATABASE_PATH"])
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


# Close DB connection
def close_db(e=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db(path):
    with sqlite3.connect(path) as conn:
        conn.executescript(SCHEMA)
        conn.commit()
