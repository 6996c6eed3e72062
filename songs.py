import logging
import sqlite3
from urllib.parse import urlencode

import pytz
from flask import Blueprint, current_app, jsonify, request
from pymongo.errors import PyMongoError

from auth import send_song_request_confirmation, session_identity
from database import parse_timestamp
from extensions import limiter
from lyrics_llm import LyricsGenerationError, get_lyrics_writer, validate_prompt
from lyrics_timing import process_aligned_words
from mongo_integration import get_like_counts
from payments import has_completed_payment
from schemas import (
    ApproveLyricsRequest,
    CreateSongRequest,
    GenerateLyricsRequest,
    GenerateSongRequest,
    RefineLyricsRequest,
    SelectVariantRequest,
    StoreLyricsRequest,
    TimestampedLyricsRequest,
    UpdateLibraryRequest,
    parse_body,
)
from search import DEFAULT_LIMIT, FuzzySongSearch
from song_status import FAILED, PENDING, describe_status, download_url
from song_store import (
    approve_lyrics_draft,
    create_lyrics_draft,
    create_song,
    create_song_request,
    generate_base_slug,
    generate_unique_slug,
    get_latest_lyrics_draft,
    get_lyrics_draft,
    get_lyrics_drafts,
    get_song,
    get_song_by_request,
    get_song_by_slug,
    get_song_request,
    is_valid_slug,
    list_categories,
    list_featured_songs,
    list_library_songs,
    owns_request,
    update_song,
    update_song_request_status,
)
from status_sync import StatusUpdateError, check_song_status, handle_callback
from suno_client import SunoAPIError, get_suno_client

log = logging.getLogger(__name__)

songs_bp = Blueprint('songs_bp', __name__)

MAX_LIBRARY_LIMIT = 100


# Serialization

def display_time(value):
    """UTC timestamp -> wall-clock string in the configured display timezone."""
    dt = parse_timestamp(value)
    if dt is None:
        return None
    tz = pytz.timezone(current_app.config["DISPLAY_TIMEZONE"])
    return dt.astimezone(tz).strftime('%Y-%m-%d %H:%M:%S')


def serialize_song(song, likes=None):
    data = {
        "id": song["id"],
        "songRequestId": song["song_request_id"],
        "title": song["title"],
        "slug": song["slug"],
        "lyrics": song["lyrics"],
        "musicStyle": song["music_style"],
        "description": song["song_description"],
        "serviceProvider": song["service_provider"],
        "categories": song["categories"] or [],
        "tags": song["tags"] or [],
        "songUrl": song["song_url"],
        "duration": song["duration"],
        "status": song["status"],
        "sunoTaskId": song["suno_task_id"],
        "variants": song["song_variants"] or [],
        "selectedVariant": song["selected_variant"],
        "addToLibrary": bool(song["add_to_library"]),
        "isFeatured": bool(song["is_featured"]),
        "errorMessage": song["error_message"],
        "createdAt": song["created_at"],
        "created_at_display": display_time(song["created_at"]),
    }
    if likes is not None:
        data["likes"] = likes
    return data


def serialize_song_request(song_request):
    return {
        "id": song_request["id"],
        "requesterName": song_request["requester_name"],
        "recipientDetails": song_request["recipient_details"],
        "occasion": song_request["occasion"],
        "languages": song_request["languages"],
        "mood": song_request["mood"] or [],
        "songStory": song_request["song_story"],
        "mobileNumber": song_request["mobile_number"],
        "email": song_request["email"],
        "status": song_request["status"],
        "createdAt": song_request["created_at"],
    }


def serialize_draft(draft):
    return {
        "id": draft["id"],
        "songRequestId": draft["song_request_id"],
        "version": draft["version"],
        "lyrics": draft["generated_text"],
        "title": draft["song_title"],
        "musicStyle": draft["music_style"],
        "language": draft["language"],
        "status": draft["status"],
        "createdAt": draft["created_at"],
    }


# Helpers

def _owned_request(request_id):
    """Load a song request the current session owns. Returns ``(song_request, error_response)``."""
    user_id, anonymous_user_id = session_identity()
    if user_id is None and not anonymous_user_id:
        return None, (jsonify({"error": "Session required"}), 401)
    song_request = get_song_request(request_id)
    if song_request is None:
        return None, (jsonify({"error": "Song request not found"}), 404)
    if not owns_request(song_request, user_id, anonymous_user_id):
        return None, (jsonify({"error": "Access denied"}), 403)
    return song_request, None


def _owned_song(song_id):
    song = get_song(song_id)
    if song is None or song["is_deleted"]:
        return None, (jsonify({"success": False, "error": "Song not found"}), 404)
    _, error = _owned_request(song["song_request_id"])
    if error:
        return None, error
    return song, None


def _parse_id(raw):
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _callback_url(request_id):
    user_id, anonymous_user_id = session_identity()
    params = {"requestId": request_id}
    if user_id is not None:
        params["userId"] = user_id
    if anonymous_user_id:
        params["anonymousUserId"] = anonymous_user_id
    base = current_app.config["PUBLIC_BASE_URL"].rstrip("/")
    return f"{base}/api/suno-webhook?{urlencode(params)}"


# Song requests

@songs_bp.route('/api/create-song-request', methods=['POST'])
@limiter.limit("10/minute")
def create_song_request_route():
    data = parse_body(CreateSongRequest)
    user_id, anonymous_user_id = session_identity()
    if user_id is None and not anonymous_user_id:
        return jsonify({"error": "Session required. Please log in or start an anonymous session."}), 400

    song_request = create_song_request(data.model_dump(), user_id=user_id, anonymous_user_id=anonymous_user_id)
    log.info("Song request %s created", song_request["id"])

    if data.email:
        recipient_name = data.recipient_details.split(",")[0].strip()
        send_song_request_confirmation(data.email, data.requester_name, recipient_name, song_request["id"])

    return jsonify({
        "success": True,
        "requestId": song_request["id"],
        "songRequest": serialize_song_request(song_request),
    }), 201


@songs_bp.route('/api/song-requests/<int:request_id>', methods=['GET'])
def get_song_request_route(request_id):
    song_request, error = _owned_request(request_id)
    if error:
        return error
    song = get_song_by_request(request_id)
    return jsonify({
        "success": True,
        "songRequest": serialize_song_request(song_request),
        "song": serialize_song(song) if song else None,
    })


@songs_bp.route('/api/song-requests/<int:request_id>/cancel', methods=['POST'])
def cancel_song_request(request_id):
    song_request, error = _owned_request(request_id)
    if error:
        return error
    if song_request["status"] == "completed":
        return jsonify({"error": "Completed requests cannot be cancelled"}), 400
    if song_request["status"] != "cancelled":
        update_song_request_status(request_id, "cancelled")
    return jsonify({"success": True, "status": "cancelled"})


# Lyrics

@songs_bp.route('/api/generate-lyrics', methods=['POST'])
@limiter.limit("10/minute")
def generate_lyrics():
    data = parse_body(GenerateLyricsRequest)
    song_request, error = _owned_request(data.request_id)
    if error:
        return error

    try:
        result = get_lyrics_writer().generate(song_request)
    except LyricsGenerationError as e:
        current_app.logger.error("Lyrics generation failed for request %s: %s", data.request_id, e)
        return jsonify({"error": str(e)}), 502

    draft = create_lyrics_draft(
        data.request_id,
        result["lyrics"],
        title=result["title"],
        music_style=result["music_style"],
        language=result["language"],
        prompt=result["prompt"],
        model_name=result["model_name"],
    )
    return jsonify({"success": True, "draft": serialize_draft(draft)})


@songs_bp.route('/api/refine-lyrics', methods=['POST'])
@limiter.limit("10/minute")
def refine_lyrics():
    data = parse_body(RefineLyricsRequest)
    valid, message = validate_prompt(data.refine_text)
    if not valid:
        return jsonify({"error": message}), 400

    _, error = _owned_request(data.request_id)
    if error:
        return error
    latest = get_latest_lyrics_draft(data.request_id)
    if latest is None:
        return jsonify({"error": "No lyrics found to refine"}), 404

    writer = get_lyrics_writer()
    try:
        refined = writer.refine(latest["generated_text"], data.refine_text)
    except LyricsGenerationError as e:
        current_app.logger.error("Lyrics refinement failed for request %s: %s", data.request_id, e)
        return jsonify({"error": str(e)}), 502

    draft = create_lyrics_draft(
        data.request_id,
        refined,
        title=latest["song_title"],
        music_style=latest["music_style"],
        language=latest["language"],
        prompt=data.refine_text,
        model_name=writer.model,
    )
    return jsonify({"success": True, "draft": serialize_draft(draft)})


@songs_bp.route('/api/store-lyrics', methods=['POST'])
def store_lyrics():
    data = parse_body(StoreLyricsRequest)
    _, error = _owned_request(data.request_id)
    if error:
        return error

    latest = get_latest_lyrics_draft(data.request_id) or {}
    draft = create_lyrics_draft(
        data.request_id,
        data.lyrics,
        title=data.title or latest.get("song_title"),
        music_style=data.music_style or latest.get("music_style"),
        language=latest.get("language"),
        model_name="manual",
    )
    return jsonify({"success": True, "draft": serialize_draft(draft)})


@songs_bp.route('/api/fetch-lyrics', methods=['GET'])
def fetch_lyrics():
    request_id = _parse_id(request.args.get("requestId"))
    if request_id is None:
        return jsonify({"error": "Invalid requestId"}), 400
    _, error = _owned_request(request_id)
    if error:
        return error
    drafts = get_lyrics_drafts(request_id)
    return jsonify({"success": True, "drafts": [serialize_draft(d) for d in drafts]})


@songs_bp.route('/api/approve-lyrics', methods=['POST'])
def approve_lyrics():
    data = parse_body(ApproveLyricsRequest)
    _, error = _owned_request(data.request_id)
    if error:
        return error
    draft = get_lyrics_draft(data.draft_id)
    if draft is None or draft["song_request_id"] != data.request_id:
        return jsonify({"error": "Lyrics draft not found"}), 404
    draft = approve_lyrics_draft(data.draft_id, data.request_id)
    return jsonify({"success": True, "draft": serialize_draft(draft)})


# Generation

@songs_bp.route('/api/generate-song', methods=['POST'])
@limiter.limit("5/minute")
def generate_song():
    data = parse_body(GenerateSongRequest)
    song_request, error = _owned_request(data.song_request_id)
    if error:
        return error

    draft = get_lyrics_draft(data.lyrics_draft_id)
    if draft is None or draft["song_request_id"] != data.song_request_id:
        return jsonify({"error": "Lyrics draft not found"}), 404
    if draft["status"] != "approved":
        return jsonify({"error": "Lyrics must be approved before generating a song"}), 400

    existing = get_song_by_request(data.song_request_id)
    if existing is not None and existing["status"] != FAILED:
        return jsonify({
            "error": "A song already exists for this request",
            "songId": existing["id"],
            "slug": existing["slug"],
        }), 400

    if current_app.config["REQUIRE_PAYMENT"] and not has_completed_payment(data.song_request_id):
        return jsonify({"error": "Payment required", "songRequestId": data.song_request_id}), 402

    if existing is not None:
        # Retire the failed attempt; its slug stays reserved.
        update_song(existing["id"], is_deleted=1)

    title = draft["song_title"] or "Untitled Song"
    style = draft["music_style"] or "Pop"
    song = create_song({
        "song_request_id": song_request["id"],
        "approved_lyrics_id": draft["id"],
        "title": title,
        "slug": generate_unique_slug(generate_base_slug(title)),
        "lyrics": draft["generated_text"],
        "music_style": style,
        "song_description": f"A {style} song for {song_request['recipient_details'].split(',')[0].strip()}",
        "status": PENDING,
    })

    try:
        task_id = get_suno_client().generate(title, draft["generated_text"], style, _callback_url(song_request["id"]))
    except SunoAPIError as e:
        current_app.logger.error("Song generation failed for request %s: %s", song_request["id"], e)
        update_song(song["id"], status=FAILED, error_message=str(e))
        return jsonify({"success": False, "error": "Failed to start song generation", "songId": song["id"]}), 502

    song = update_song(song["id"], suno_task_id=task_id)
    update_song_request_status(song_request["id"], "processing")
    return jsonify({
        "success": True,
        "songId": song["id"],
        "slug": song["slug"],
        "taskId": task_id,
        "status": song["status"],
    })


@songs_bp.route('/api/suno-webhook', methods=['POST'])
def suno_webhook():
    raw_request_id = request.args.get("requestId")
    request_id = None
    if raw_request_id is not None:
        try:
            request_id = int(raw_request_id)
        except ValueError:
            return jsonify({"success": False, "error": "Invalid requestId"}), 400

    payload = request.get_json(silent=True)
    try:
        result = handle_callback(payload, request_id)
    except (StatusUpdateError, sqlite3.Error) as e:
        current_app.logger.error("Error processing Suno webhook (request %s): %s", request_id, e)
        result = {"success": True, "message": "Error logged"}
    return jsonify(result), 200


@songs_bp.route('/api/song/status/<song_id>', methods=['GET'])
def get_song_status(song_id):
    song_id = _parse_id(song_id)
    if song_id is None:
        return jsonify({"success": False, "error": "Invalid song ID"}), 400
    song = get_song(song_id)
    if song is None or song["is_deleted"]:
        return jsonify({"success": False, "error": "Song not found"}), 404
    return jsonify({"success": True, "songId": song_id, "status": song["status"], "statusInfo": describe_status(song)})


@songs_bp.route('/api/song/status/<song_id>', methods=['POST'])
def refresh_song_status(song_id):
    song_id = _parse_id(song_id)
    if song_id is None:
        return jsonify({"success": False, "error": "Invalid song ID"}), 400
    song = get_song(song_id)
    if song is None or song["is_deleted"]:
        return jsonify({"success": False, "error": "Song not found"}), 404

    try:
        status_info, song = check_song_status(get_suno_client(), song_id, request.args.get("taskId"))
    except StatusUpdateError as e:
        current_app.logger.error("Status check for song %s failed: %s", song_id, e)
        return jsonify({"success": False, "error": "Failed to update song status"}), 500

    if song is None:
        return jsonify({"success": False, "error": "Song not found"}), 404
    return jsonify({"success": True, "status": status_info, "song": serialize_song(song)})


# Songs

@songs_bp.route('/api/song/<slug>', methods=['GET'])
def get_song_by_slug_route(slug):
    if not is_valid_slug(slug):
        return jsonify({"success": False, "error": "Invalid slug"}), 400
    song = get_song_by_slug(slug)
    if song is None:
        return jsonify({"success": False, "error": "Song not found"}), 404
    return jsonify({"success": True, "song": serialize_song(song), "statusInfo": describe_status(song)})


@songs_bp.route('/api/song-variants/<int:song_id>', methods=['GET'])
def get_song_variants(song_id):
    song = get_song(song_id)
    if song is None or song["is_deleted"]:
        return jsonify({"success": False, "error": "Song not found"}), 404
    return jsonify({
        "success": True,
        "songId": song_id,
        "variants": song["song_variants"] or [],
        "selectedVariant": song["selected_variant"],
    })


@songs_bp.route('/api/song-variants/<int:song_id>/select', methods=['POST'])
def select_song_variant(song_id):
    data = parse_body(SelectVariantRequest)
    song, error = _owned_song(song_id)
    if error:
        return error

    variants = song["song_variants"] or []
    if data.variant_index >= len(variants):
        return jsonify({"success": False, "error": "Variant index out of range"}), 400
    variant = variants[data.variant_index]
    if not download_url(variant):
        return jsonify({"success": False, "error": "Variant is not ready for download"}), 400

    song = update_song(
        song_id, selected_variant=data.variant_index, song_url=download_url(variant), duration=variant.get("duration")
    )
    return jsonify({"success": True, "song": serialize_song(song)})


@songs_bp.route('/api/songs/<int:song_id>', methods=['DELETE'])
def delete_song(song_id):
    song, error = _owned_song(song_id)
    if error:
        return error
    update_song(song["id"], is_deleted=1)
    log.info("Song %s deleted", song_id)
    return jsonify({"success": True})


@songs_bp.route('/api/songs/library', methods=['GET'])
def song_library():
    limit = request.args.get("limit", DEFAULT_LIMIT, type=int)
    limit = max(1, min(limit, MAX_LIBRARY_LIMIT))
    query = request.args.get("q", "")

    songs = FuzzySongSearch(list_library_songs()).search(query, limit=limit)
    try:
        likes = get_like_counts(s["slug"] for s in songs)
    except PyMongoError as e:
        current_app.logger.error("Could not load like counts: %s", e)
        likes = {}
    return jsonify({
        "success": True,
        "query": query,
        "songs": [serialize_song(s, likes=likes.get(s["slug"], 0)) for s in songs],
    })


@songs_bp.route('/api/song/update-library', methods=['POST'])
def update_library():
    data = parse_body(UpdateLibraryRequest)
    song, error = _owned_song(data.song_id)
    if error:
        return error
    update_song(song["id"], add_to_library=int(data.add_to_library))
    log.info("Song %s add_to_library set to %s", song["id"], data.add_to_library)
    return jsonify({
        "success": True,
        "message": f"Song {'added to' if data.add_to_library else 'removed from'} library",
        "songId": song["id"],
        "addToLibrary": data.add_to_library,
    })


@songs_bp.route('/api/songs/best', methods=['GET'])
def best_songs():
    songs = list_featured_songs()
    try:
        likes = get_like_counts(s["slug"] for s in songs)
    except PyMongoError as e:
        current_app.logger.error("Could not load like counts: %s", e)
        likes = {}
    return jsonify({"success": True, "songs": [serialize_song(s, likes=likes.get(s["slug"], 0)) for s in songs]})


@songs_bp.route('/api/categories', methods=['GET'])
def categories():
    return jsonify({"success": True, "categories": list_categories()})


# Synchronized lyrics

@songs_bp.route('/api/song/generate-timestamped-lyrics', methods=['POST'])
@limiter.limit("10/minute")
def generate_timestamped_lyrics():
    data = parse_body(TimestampedLyricsRequest)
    song = get_song(data.song_id)
    if song is None or song["is_deleted"]:
        return jsonify({"success": False, "error": "Song not found"}), 404
    if not song["suno_task_id"]:
        return jsonify({"success": False, "error": "Song has no generation task"}), 400

    variants = song["song_variants"] or []
    if data.variant_index >= len(variants) or not variants[data.variant_index].get("id"):
        return jsonify({"success": False, "error": "Variant not available"}), 400

    try:
        alignment = get_suno_client().timestamped_lyrics(song["suno_task_id"], variants[data.variant_index]["id"])
    except SunoAPIError as e:
        current_app.logger.error("Timestamped lyrics failed for song %s: %s", song["id"], e)
        return jsonify({"success": False, "error": "Failed to fetch timestamped lyrics"}), 502

    aligned_words = alignment.get("alignedWords") or []
    if not aligned_words:
        return jsonify({"success": False, "error": "No timestamped lyrics available yet"}), 404
    try:
        lines = process_aligned_words(aligned_words)
    except ValueError as e:
        current_app.logger.error("Unexpected alignment for song %s: %s", song["id"], e)
        return jsonify({"success": False, "error": "Unexpected timestamped lyrics format"}), 502

    stored = dict(song["timestamped_lyrics_variants"] or {})
    stored[str(data.variant_index)] = lines
    update_song(song["id"], timestamped_lyrics_variants=stored)
    return jsonify({"success": True, "songId": song["id"], "variantIndex": data.variant_index, "lines": lines})


@songs_bp.route('/api/song-lyrics/<slug>', methods=['GET'])
def get_song_lyrics(slug):
    if not is_valid_slug(slug):
        return jsonify({"success": False, "error": "Invalid slug"}), 400
    song = get_song_by_slug(slug)
    if song is None:
        return jsonify({"success": False, "error": "Song not found"}), 404

    variant_index = song["selected_variant"] or 0
    timed = (song["timestamped_lyrics_variants"] or {}).get(str(variant_index))
    return jsonify({
        "success": True,
        "slug": slug,
        "title": song["title"],
        "lyrics": song["lyrics"],
        "variantIndex": variant_index,
        "timestampedLyrics": timed,
    })
