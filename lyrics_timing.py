"""
Turns word-level lyric alignment into displayable lines.

The provider aligns every sung word to the audio (``{"word", "startS",
"endS"}`` in seconds). The player wants whole lines with millisecond
boundaries, with section headers such as ``(Chorus)`` kept as lines of their
own so they can be styled differently.

Run as a script to convert a saved alignment file::

    python lyrics_timing.py aligned-words.json -o converted-lyrics.json
"""

import argparse
import json
import logging
import re
import sys

log = logging.getLogger(__name__)

OFFSET_THRESHOLD_S = 5
MIN_WORDS_AT_COMMA = 8
MAX_WORDS_PER_LINE = 12

OPEN_BRACKETS = ("(", "[")
CLOSE_BRACKETS = (")", "]")
COMPLETE_MARKER = re.compile(r"^\s*[(\[][^)\]]*[)\]]")
SENTENCE_END = re.compile(r"[.!?]\s*$")


def s_to_ms(seconds):
    return int(round(seconds * 1000))


def is_already_converted(data):
    return (
        isinstance(data, list)
        and len(data) > 0
        and isinstance(data[0], dict)
        and {"text", "start", "end"} <= data[0].keys()
    )


def is_word_by_word_format(data):
    return (
        isinstance(data, list)
        and len(data) > 0
        and isinstance(data[0], dict)
        and {"word", "startS", "endS"} <= data[0].keys()
    )


def is_marker_word(word):
    return bool(COMPLETE_MARKER.match(word))


def calculate_timing_offset(aligned_words):
    """Leading silence to strip: the first real word's start, if it comes late."""
    first = next((w for w in aligned_words if not is_marker_word(w["word"])), None)
    if first is None:
        return 0
    if first["startS"] > OFFSET_THRESHOLD_S:
        log.info("Detected timing offset of %.2fs", first["startS"])
        return first["startS"]
    return 0


def group_words(aligned_words, timing_offset=0):
    segments = []
    current = []
    current_start = current_end = None
    pending_marker = None

    def shifted(seconds):
        return max(0, s_to_ms(seconds - timing_offset))

    def flush():
        nonlocal current, current_start, current_end
        if current:
            segments.append({"text": " ".join(current).strip(), "start": shifted(current_start), "end": shifted(current_end)})
        current, current_start, current_end = [], None, None

    last = len(aligned_words) - 1
    for i, item in enumerate(aligned_words):
        word = item["word"]
        stripped = word.strip()

        # Section header split over several tokens, e.g. "(" "Verse" "1)".
        if pending_marker is not None:
            pending_marker["words"].append(stripped)
            pending_marker["end"] = item["endS"]
            if stripped.endswith(CLOSE_BRACKETS) or i == last:
                segments.append({
                    "text": " ".join(pending_marker["words"]).replace("( ", "(").replace("[ ", "["),
                    "start": shifted(pending_marker["start"]),
                    "end": shifted(pending_marker["end"]),
                })
                pending_marker = None
            continue

        if is_marker_word(word):
            flush()
            segments.append({"text": stripped, "start": shifted(item["startS"]), "end": shifted(item["endS"])})
            continue

        if stripped.startswith(OPEN_BRACKETS):
            flush()
            pending_marker = {"words": [stripped], "start": item["startS"], "end": item["endS"]}
            continue

        if not current:
            current_start = item["startS"]
        current.append(word)
        current_end = item["endS"]

        word_count = len(current)
        enough_words = word_count >= MIN_WORDS_AT_COMMA and (stripped.endswith(",") or word_count >= MAX_WORDS_PER_LINE)
        if SENTENCE_END.search(word) or "\n" in word or i == last or enough_words:
            flush()

    flush()
    return segments


def convert_lyrics(data, timing_offset=0):
    if is_already_converted(data):
        return data
    if is_word_by_word_format(data):
        return group_words(data, timing_offset)
    raise ValueError("Unsupported input format. Expected array of word objects or already converted segments.")


def process_aligned_words(aligned_words):
    """Full conversion: offset detection, grouping, re-indexing and cleanup."""
    timing_offset = calculate_timing_offset(aligned_words) if is_word_by_word_format(aligned_words) else 0
    segments = convert_lyrics(aligned_words, timing_offset)

    lines = []
    for segment in segments:
        text = re.sub(r"\s+", " ", str(segment["text"])).strip()
        if text:
            lines.append({"index": len(lines), "text": text, "start": segment["start"], "end": segment["end"]})
    return lines


def load_alignment(path):
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("alignedWords") or data.get("data", {}).get("alignedWords") or []
    return data


def main(argv=None):
    parser = argparse.ArgumentParser(description="Convert word-aligned lyrics into timed lines.")
    parser.add_argument("input", help="JSON file with an alignedWords array")
    parser.add_argument("-o", "--output", default="converted-lyrics.json")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    try:
        aligned_words = load_alignment(args.input)
        lines = process_aligned_words(aligned_words)
    except (OSError, ValueError) as e:
        log.error("Conversion failed: %s", e)
        return 1

    with open(args.output, "w", encoding="utf-8") as f:
        json.dump(lines, f, indent=2, ensure_ascii=False)
    log.info("Processed %d items into %d lines -> %s", len(aligned_words), len(lines), args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
