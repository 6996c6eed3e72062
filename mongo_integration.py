import datetime
import logging

from flask import Blueprint, current_app, jsonify
from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from song_store import get_song_by_slug, is_valid_slug

log = logging.getLogger(__name__)

# Create a blueprint to register MongoDB-related endpoints
mongo_bp = Blueprint('mongo_bp', __name__)

_client = None
_indexed = set()


def set_client(client):
    """Swap the MongoDB client (tests hand in a mongomock client)."""
    global _client
    _client = client
    _indexed.clear()


def get_mongo_db():
    global _client
    if _client is None:
        _client = MongoClient(current_app.config["MONGO_URI"], serverSelectionTimeoutMS=5000)
    name = current_app.config["MONGO_DB_NAME"]
    db = _client[name]
    if name not in _indexed:
        # Create indexes for faster queries
        db["song_likes"].create_index([("slug", ASCENDING)], unique=True)
        db["payment_webhooks"].create_index([("event_id", ASCENDING)], unique=True)
        _indexed.add(name)
    return db


def likes_collection():
    return get_mongo_db()["song_likes"]


def webhooks_collection():
    return get_mongo_db()["payment_webhooks"]


# Likes

def get_like_count(slug):
    doc = likes_collection().find_one({"slug": slug})
    return doc["likes"] if doc else 0


def get_like_counts(slugs):
    docs = likes_collection().find({"slug": {"$in": list(slugs)}})
    return {doc["slug"]: doc["likes"] for doc in docs}


def increment_like(slug):
    likes_collection().update_one(
        {"slug": slug},
        {"$inc": {"likes": 1}, "$set": {"updated_at": datetime.datetime.now(datetime.timezone.utc)}},
        upsert=True,
    )
    return get_like_count(slug)


def decrement_like(slug):
    # Only matches while the count is positive, so it never goes below zero.
    likes_collection().update_one(
        {"slug": slug, "likes": {"$gt": 0}},
        {"$inc": {"likes": -1}, "$set": {"updated_at": datetime.datetime.now(datetime.timezone.utc)}},
    )
    return get_like_count(slug)


def _liked_song_or_error(slug):
    if not is_valid_slug(slug):
        return jsonify({"success": False, "error": "Invalid slug"}), 400
    if get_song_by_slug(slug) is None:
        return jsonify({"success": False, "error": "Song not found"}), 404
    return None


@mongo_bp.route('/api/song-likes/<slug>', methods=['GET'])
def get_song_likes(slug):
    error = _liked_song_or_error(slug)
    if error:
        return error
    try:
        return jsonify({"success": True, "slug": slug, "likes": get_like_count(slug)}), 200
    except PyMongoError as e:
        current_app.logger.error("Error reading likes for %s: %s", slug, e)
        return jsonify({"success": False, "error": "Failed to fetch likes"}), 500


@mongo_bp.route('/api/song-likes/<slug>', methods=['POST'])
def like_song(slug):
    error = _liked_song_or_error(slug)
    if error:
        return error
    try:
        return jsonify({"success": True, "slug": slug, "likes": increment_like(slug)}), 200
    except PyMongoError as e:
        current_app.logger.error("Error in like route: %s", e)
        return jsonify({"success": False, "error": "Failed to like song"}), 500


@mongo_bp.route('/api/song-likes/<slug>', methods=['DELETE'])
def unlike_song(slug):
    error = _liked_song_or_error(slug)
    if error:
        return error
    try:
        return jsonify({"success": True, "slug": slug, "likes": decrement_like(slug)}), 200
    except PyMongoError as e:
        current_app.logger.error("Error in unlike route: %s", e)
        return jsonify({"success": False, "error": "Failed to unlike song"}), 500


# Payment webhook log

def record_webhook_event(event_id, event, payload):
    """Log a webhook delivery. Returns False when the event id was already seen."""
    try:
        webhooks_collection().insert_one({
            "event_id": event_id,
            "event": event,
            "payload": payload,
            "processed": False,
            "received_at": datetime.datetime.now(datetime.timezone.utc),
        })
    except DuplicateKeyError:
        log.info("Duplicate webhook event %s ignored", event_id)
        return False
    return True


def mark_webhook_processed(event_id):
    webhooks_collection().update_one(
        {"event_id": event_id},
        {"$set": {"processed": True, "processed_at": datetime.datetime.now(datetime.timezone.utc)}},
    )


def forget_webhook_event(event_id):
    webhooks_collection().delete_one({"event_id": event_id})
