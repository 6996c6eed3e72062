import logging
import re

from flask import current_app
from google import genai

log = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 5000

DANGEROUS_PATTERNS = [
    re.compile(r"ignore\s+(previous|all|above|prior)\s+(instructions|prompts|rules)", re.I),
    re.compile(r"forget\s+(everything|all|previous)", re.I),
    re.compile(r"new\s+instructions:", re.I),
    re.compile(r"system\s+(prompt|message|override)", re.I),
    re.compile(r"act\s+as\s+(if|though)", re.I),
]


class LyricsGenerationError(Exception):
    pass


def validate_prompt(prompt):
    """Reject user edit instructions that try to steer the model off task."""
    for pattern in DANGEROUS_PATTERNS:
        if pattern.search(prompt):
            return False, "Invalid input detected. Please rephrase your request."
    if len(prompt) > MAX_PROMPT_LENGTH:
        return False, f"Input too long. Please keep it under {MAX_PROMPT_LENGTH} characters."
    return True, None


def build_lyrics_prompt(recipient_name, relationship="", occasion="", languages=None, mood=None, story="",
                        style="Personal"):
    language = (languages or ["English"])[0] or "English"
    mood_str = ", ".join(mood) if mood else "joyful"
    recipient = f"{recipient_name} ({relationship})" if relationship else recipient_name
    story_block = f"STORY/CONTEXT:\n{story}\n" if story else ""

    return f"""You are a professional songwriter. Create a beautiful, heartfelt song with the following details:

RECIPIENT: {recipient}
OCCASION: {occasion or 'special moment'}
LANGUAGE: {language}
MOOD: {mood_str}
STYLE: {style}

{story_block}
Please generate:
1. A catchy, memorable song title
2. Complete song lyrics with verses and chorus
3. Music style recommendation (e.g., "Pop Ballad", "Acoustic Folk", "R&B", etc.)

IMPORTANT REQUIREMENTS:
- Lyrics should be in {language}
- Include 2-3 verses and a memorable chorus
- Make it emotional and personal
- Keep verses 4-6 lines each
- Chorus should be 3-4 lines and repeatable
- Total length: 15-20 lines
- Use natural, conversational language
- Avoid clichés, be original

Format your response EXACTLY like this:
TITLE: [Song Title]
MUSIC_STYLE: [Style]
LYRICS:
[Verse 1]
Line 1
Line 2
...

[Chorus]
Line 1
Line 2
..."""


def build_refine_prompt(original_lyrics, edit_prompt):
    return f"""You are a professional songwriter. Here are the current song lyrics:

{original_lyrics}

The user wants you to make the following changes:
{edit_prompt}

Please provide the COMPLETE revised lyrics (not just the changes). Maintain the song structure and format.
Keep the same verse/chorus format with [Verse 1], [Chorus], etc."""


def parse_lyrics_response(text):
    title_match = re.search(r"TITLE:\s*(.+)", text, re.I)
    style_match = re.search(r"MUSIC_STYLE:\s*(.+)", text, re.I)
    lyrics_match = re.search(r"LYRICS:\s*([\s\S]+)", text, re.I)

    if lyrics_match:
        lyrics = lyrics_match.group(1).strip()
    else:
        lyrics = "\n".join(text.split("\n")[3:]).strip()

    return {
        "title": title_match.group(1).strip() if title_match else "Untitled Song",
        "music_style": style_match.group(1).strip() if style_match else "Pop",
        "lyrics": lyrics,
    }


class LyricsWriter:
    def __init__(self, api_key, model="gemini-2.0-flash", demo_mode=False):
        self.api_key = api_key
        self.model = model
        self.demo_mode = demo_mode
        self._client = None

    @classmethod
    def from_config(cls, config):
        return cls(config["GEMINI_API_KEY"], model=config["GEMINI_MODEL"], demo_mode=config["DEMO_MODE"])

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise LyricsGenerationError("GEMINI_API_KEY environment variable not set")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def _complete(self, prompt):
        try:
            response = self.client.models.generate_content(model=self.model, contents=prompt)
        except LyricsGenerationError:
            raise
        except Exception as e:
            log.error("Error in Gemini API: %s", e)
            raise LyricsGenerationError("Failed to generate lyrics. Please try again.") from e
        text = (response.text or "").strip()
        if not text:
            raise LyricsGenerationError("No lyrics generated")
        return text

    def generate(self, song_request):
        """Write a first draft for a song request row."""
        recipient_name = song_request["recipient_details"].split(",")[0].strip()
        languages = [l.strip() for l in song_request["languages"].split(",") if l.strip()] or ["English"]

        if self.demo_mode:
            log.info("[DEMO MODE] Generating lyrics for: %s", recipient_name)
            return {
                "title": f"Song for {recipient_name}",
                "music_style": "Pop Ballad",
                "lyrics": demo_lyrics(recipient_name),
                "language": languages[0],
                "model_name": "demo-model",
                "prompt": None,
            }

        prompt = build_lyrics_prompt(
            recipient_name,
            occasion=song_request.get("occasion") or "",
            languages=languages,
            mood=song_request.get("mood") or [],
            story=song_request.get("song_story") or "",
        )
        parsed = parse_lyrics_response(self._complete(prompt))
        parsed.update(language=languages[0], model_name=self.model, prompt=prompt)
        return parsed

    def refine(self, original_lyrics, edit_prompt):
        if self.demo_mode:
            log.info("[DEMO MODE] Refining lyrics with prompt: %s", edit_prompt)
            return original_lyrics + "\n\n[Refined based on feedback]"
        return self._complete(build_refine_prompt(original_lyrics, edit_prompt))


def demo_lyrics(name):
    return f"""[Verse 1]
Every moment spent with you
Fills my heart with joy so true
{name}, you light up my days
In so many wonderful ways

[Chorus]
This song is for you
A melody bright and new
Celebrating all you do
{name}, this song is for you"""


def get_lyrics_writer():
    return current_app.extensions["lyrics_writer"]
