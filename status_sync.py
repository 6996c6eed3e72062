"""
Reconciles provider progress into stored song rows.

Two things report progress for a generation task: the provider's webhook
(pushed per stage) and the client's status poll (which asks the provider
directly). Both funnel into ``apply_generation_update`` so that whichever
arrives first, and however often either repeats, the stored row ends up in
the same state.
"""

import logging
import sqlite3
import time

from song_status import (
    CALLBACK_COMPLETE,
    CALLBACK_ERROR,
    CALLBACK_FIRST,
    CALLBACK_TEXT,
    COMPLETED,
    FAILED,
    TERMINAL_STATUSES,
    describe_status,
    download_url,
    merge_variants,
    normalize_variant,
    primary_variant,
    resolve_status,
)
from song_store import (
    get_song,
    get_song_by_request,
    get_song_by_task_id,
    record_status_check,
    update_active_song,
    update_song,
    update_song_request_status,
)

log = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 1.0

HANDLED_CALLBACKS = (CALLBACK_FIRST, CALLBACK_COMPLETE, CALLBACK_ERROR)

# Poll answers expressed as the equivalent webhook stage.
POLL_TO_CALLBACK = {
    "completed": CALLBACK_COMPLETE,
    "failed": CALLBACK_ERROR,
    "processing": CALLBACK_FIRST,
}

REQUEST_STATUS_FOR = {COMPLETED: "completed", FAILED: "failed"}


class StatusUpdateError(Exception):
    pass


def _update_with_retry(song_id, fields):
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            song = update_active_song(song_id, **fields)
            if song is not None:
                log.info("Song %s updated (attempt %d): %s", song_id, attempt, fields.get("status"))
            return song
        except sqlite3.OperationalError as e:
            log.error("Failed to update song %s (attempt %d): %s", song_id, attempt, e)
            if attempt == MAX_RETRIES:
                raise StatusUpdateError(f"Could not update song {song_id}: {e}") from e
            time.sleep(RETRY_DELAY * attempt)


def apply_generation_update(song_id, callback_type, raw_variants, error_message=None):
    """Fold one progress report into the stored song.

    Returns ``(song, changed)``. Songs already COMPLETED or FAILED are left
    untouched, and a report that would not change anything is not written.
    """
    song = get_song(song_id)
    if song is None:
        return None, False

    if song["status"] in TERMINAL_STATUSES:
        log.info("Song %s is already %s; ignoring '%s' update", song_id, song["status"], callback_type)
        return song, False

    incoming = [normalize_variant(v) for v in raw_variants or []]
    variants = merge_variants(song.get("song_variants") or [], incoming)
    status, derived_error = resolve_status(song["status"], variants, callback_type)

    fields = {"status": status, "song_variants": variants}
    if status == FAILED:
        fields["error_message"] = error_message or derived_error
    primary = primary_variant(variants, song.get("selected_variant"))
    if primary is not None:
        fields["song_url"] = download_url(primary)
        fields["duration"] = primary.get("duration")

    if all(song.get(key) == value for key, value in fields.items()):
        return song, False

    updated = _update_with_retry(song_id, fields)
    if updated is None:
        # Another writer finished the song after it was read.
        current = get_song(song_id)
        log.info("Song %s became %s concurrently; dropping '%s' update", song_id, current["status"], callback_type)
        return current, False

    if status != song["status"] and status in REQUEST_STATUS_FOR and song.get("song_request_id"):
        update_song_request_status(song["song_request_id"], REQUEST_STATUS_FOR[status])
    return updated, True


def handle_callback(payload, request_id=None):
    """Process one webhook delivery. Always returns a result dict; never raises for bad input."""
    if not isinstance(payload, dict):
        log.warning("Ignoring webhook with non-object body")
        return {"success": True, "message": "Ignored"}

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    task_id = data.get("task_id") or data.get("taskId")
    callback_type = data.get("callbackType")
    variants = data.get("data") if isinstance(data.get("data"), list) else []
    variants = [v for v in variants if isinstance(v, dict)]

    if payload.get("code") not in (None, 0, 200) and callback_type != CALLBACK_ERROR:
        log.warning("Webhook for task %s carries error code %s: %s", task_id, payload.get("code"), payload.get("msg"))
        callback_type = CALLBACK_ERROR

    song = get_song_by_task_id(task_id) if task_id else None
    if song is None and request_id is not None:
        song = get_song_by_request(request_id)
        if song is not None and task_id and song.get("suno_task_id") not in (None, task_id):
            log.warning("Webhook task %s does not match song %s task %s", task_id, song["id"], song["suno_task_id"])
            song = None

    if song is None:
        log.warning("No song found for webhook task %s (request %s)", task_id, request_id)
        return {"success": True, "message": "No matching song"}

    if callback_type == CALLBACK_TEXT:
        log.info("Lyrics stage reported for task %s", task_id)
        return {"success": True, "message": "Acknowledged"}

    if callback_type not in HANDLED_CALLBACKS:
        log.warning("Unrecognized callbackType '%s' for task %s", callback_type, task_id)
        return {"success": True, "message": "Ignored"}

    if task_id and not song.get("suno_task_id"):
        update_song(song["id"], suno_task_id=task_id)

    error_message = payload.get("msg") if callback_type == CALLBACK_ERROR else None
    updated, changed = apply_generation_update(song["id"], callback_type, variants, error_message)
    return {"success": True, "message": "Updated" if changed else "No change", "status": updated["status"]}


def check_song_status(suno, song_id, task_id=None):
    """Poll the provider for one song and reconcile the answer.

    Returns ``(status_info, song)``; ``song`` is None when it does not exist.
    """
    song = get_song(song_id)
    if song is None:
        return None, None

    if song["status"] in TERMINAL_STATUSES:
        return describe_status(song), song

    task_id = task_id or song.get("suno_task_id")
    if not task_id:
        return {"status": "pending", "isReady": False, "error": "No generation task found"}, song

    if not song.get("suno_task_id"):
        song = update_song(song_id, suno_task_id=task_id)

    record_status_check(song_id)
    result = suno.check_job_status(task_id)

    if not result["success"]:
        info = describe_status(song)
        info["error"] = result.get("error") or "Failed to check status"
        return info, song

    callback_type = POLL_TO_CALLBACK[result["status"]]
    error_message = result.get("error") if callback_type == CALLBACK_ERROR else None
    updated, _ = apply_generation_update(song_id, callback_type, result["variants"], error_message)
    return describe_status(updated), updated
