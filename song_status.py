"""
Status calculation for generated songs.

A song is generated as a handful of variants. Each variant moves through
readiness tiers as the provider publishes URLs for it; the song's own status
is derived from its variants. Everything here is pure: no database, no
network.
"""

import logging
from datetime import datetime, timedelta, timezone

log = logging.getLogger(__name__)

# Variant readiness
VARIANT_PENDING = "PENDING"
VARIANT_STREAM_READY = "STREAM_READY"
VARIANT_DOWNLOAD_READY = "DOWNLOAD_READY"

# Song status
PENDING = "PENDING"
STREAM_AVAILABLE = "STREAM_AVAILABLE"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

TERMINAL_STATUSES = (COMPLETED, FAILED)

# Callback stages sent by the provider
CALLBACK_TEXT = "text"
CALLBACK_FIRST = "first"
CALLBACK_COMPLETE = "complete"
CALLBACK_ERROR = "error"

ESTIMATED_GENERATION_MINUTES = 7.5

_PROGRESS = {PENDING: 0, STREAM_AVAILABLE: 1, COMPLETED: 2}

# Provider payloads use snake_case in callbacks and camelCase in record-info.
_VARIANT_FIELDS = {
    "audio_url": ("audio_url", "audioUrl"),
    "source_audio_url": ("source_audio_url", "sourceAudioUrl"),
    "stream_audio_url": ("stream_audio_url", "streamAudioUrl"),
    "source_stream_audio_url": ("source_stream_audio_url", "sourceStreamAudioUrl"),
    "image_url": ("image_url", "imageUrl"),
    "source_image_url": ("source_image_url", "sourceImageUrl"),
    "title": ("title",),
    "tags": ("tags",),
    "prompt": ("prompt",),
    "model_name": ("model_name", "modelName"),
    "create_time": ("createTime", "create_time"),
    "duration": ("duration",),
}


def _first(raw, keys):
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def round_duration(duration):
    if duration in (None, ""):
        return None
    try:
        return int(round(float(duration)))
    except (TypeError, ValueError, OverflowError):
        return None


def normalize_variant(raw):
    """Map a provider variant (either casing) onto the stored variant shape."""
    variant = {"id": str(raw.get("id") or "")}
    for field, keys in _VARIANT_FIELDS.items():
        variant[field] = _first(raw, keys)
    if not variant["image_url"]:
        variant["image_url"] = variant["source_image_url"]
    variant["duration"] = round_duration(variant["duration"])
    variant["variant_status"] = calculate_variant_status(variant)
    return variant


def download_url(variant):
    return variant.get("audio_url") or variant.get("source_audio_url")


def stream_url(variant):
    return variant.get("stream_audio_url") or variant.get("source_stream_audio_url")


def calculate_variant_status(variant):
    """Readiness tier of one variant, from URL presence alone.

    A download URL wins over everything else, so a variant that skipped the
    streaming stage is never reported as pending.
    """
    if variant.get("audio_url") or variant.get("source_audio_url"):
        return VARIANT_DOWNLOAD_READY
    if variant.get("source_stream_audio_url"):
        return VARIANT_STREAM_READY
    return VARIANT_PENDING


def calculate_song_status(variants):
    variants = list(variants or [])
    calculated = [dict(v, variant_status=calculate_variant_status(v)) for v in variants]
    statuses = [v["variant_status"] for v in calculated]

    has_any_stream_ready = any(s in (VARIANT_STREAM_READY, VARIANT_DOWNLOAD_READY) for s in statuses)
    has_any_download_ready = VARIANT_DOWNLOAD_READY in statuses
    all_download_ready = bool(statuses) and all(s == VARIANT_DOWNLOAD_READY for s in statuses)

    if all_download_ready:
        song_status = COMPLETED
    elif has_any_stream_ready:
        song_status = STREAM_AVAILABLE
    else:
        song_status = PENDING

    log.debug("Calculated song status %s from %d variants", song_status, len(calculated))
    return {
        "song_status": song_status,
        "variants": calculated,
        "has_any_stream_ready": has_any_stream_ready,
        "has_any_download_ready": has_any_download_ready,
        "all_variants_download_ready": all_download_ready,
    }


def merge_variants(stored, incoming):
    """Overlay incoming variants on stored ones, matched by id.

    Known URLs are never replaced with blanks, so a late or partial delivery
    cannot move a variant back to an earlier tier.
    """
    merged = [dict(v) for v in stored or []]
    index = {v.get("id"): i for i, v in enumerate(merged) if v.get("id")}

    for offset, variant in enumerate(incoming or []):
        if variant.get("id"):
            position = index.get(variant["id"])
        else:
            # Id-less variants can only be matched by their position.
            position = offset if offset < len(merged) else None
        if position is None:
            merged.append(dict(variant))
            if variant.get("id"):
                index[variant["id"]] = len(merged) - 1
            continue
        current = merged[position]
        for key, value in variant.items():
            if value not in (None, ""):
                current[key] = value

    for variant in merged:
        variant["variant_status"] = calculate_variant_status(variant)
    return merged


def resolve_status(current_status, variants, callback_type=None):
    """Next stored status for a song given its merged variants and the stage reported.

    Returns ``(status, error_message)``.
    """
    if current_status in TERMINAL_STATUSES:
        return current_status, None

    calculated = calculate_song_status(variants)

    if callback_type == CALLBACK_ERROR:
        return FAILED, "Song generation failed"

    if callback_type == CALLBACK_COMPLETE:
        if calculated["has_any_download_ready"]:
            return COMPLETED, None
        return FAILED, "Song completed but no audio URL found"

    status = calculated["song_status"]
    # Never step backwards from what is already stored.
    if _PROGRESS.get(status, 0) < _PROGRESS.get(current_status, 0):
        status = current_status
    return status, None


def primary_variant(variants, selected_index=None):
    """The download-ready variant that backs ``song_url``: the selected one if ready, else the first ready."""
    variants = variants or []
    if selected_index is not None and 0 <= selected_index < len(variants):
        chosen = variants[selected_index]
        if download_url(chosen):
            return chosen
    for variant in variants:
        if download_url(variant):
            return variant
    return None


def estimated_completion(created_at):
    if not created_at:
        return None
    if not isinstance(created_at, datetime):
        created_at = datetime.fromisoformat(str(created_at))
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at + timedelta(minutes=ESTIMATED_GENERATION_MINUTES)


def describe_status(song):
    """Client-facing status summary for a stored song."""
    status = song.get("status")
    song_url = song.get("song_url")

    if status == COMPLETED and song_url:
        info = {"status": "ready", "isReady": True, "songUrl": song_url}
        if song.get("duration"):
            info["duration"] = song["duration"]
        return info
    if status == COMPLETED:
        return {"status": "ready", "isReady": False, "error": "Song completed but no URL available"}
    if status == FAILED:
        return {"status": "failed", "isReady": False, "error": song.get("error_message") or "Song generation failed"}
    if not song.get("suno_task_id"):
        return {"status": "pending", "isReady": False}

    info = {"status": "processing", "isReady": False}
    eta = estimated_completion(song.get("created_at"))
    if eta is not None:
        info["estimatedCompletion"] = eta.isoformat()
    if status == STREAM_AVAILABLE:
        preview = next((stream_url(v) for v in song.get("song_variants") or [] if stream_url(v)), None)
        if preview:
            info["streamUrl"] = preview
    return info
