import logging
import time

import requests
from flask import current_app

from song_status import download_url, normalize_variant

log = logging.getLogger(__name__)

SUCCESS_STATES = {"SUCCESS"}
DEMO_GENERATION_SECONDS = 120


class SunoAPIError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def map_provider_state(state):
    """Collapse the provider's task states onto completed / failed / processing."""
    state = (state or "").upper()
    if state in SUCCESS_STATES:
        return "completed"
    if state.endswith("FAILED") or state.endswith("ERROR") or state.endswith("EXCEPTION"):
        return "failed"
    return "processing"


class SunoClient:
    def __init__(self, base_url, api_key, model="V4_5PLUS", demo_mode=False, session=None, timeout=30):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.demo_mode = demo_mode
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            config["SUNO_API_URL"],
            config["SUNO_API_KEY"],
            model=config["SUNO_MODEL"],
            demo_mode=config["DEMO_MODE"],
        )

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _unwrap(self, response):
        if response.status_code != 200:
            raise SunoAPIError(f"Suno API error: HTTP {response.status_code}: {response.text}", response.status_code)
        try:
            body = response.json()
        except ValueError as e:
            raise SunoAPIError(f"Suno API returned invalid JSON: {e}")
        if body.get("code") not in (0, 200):
            raise SunoAPIError(f"Suno API error: {body.get('msg') or 'unknown error'}", body.get("code"))
        return body.get("data") or {}

    def generate(self, title, lyrics, style, callback_url, negative_tags=None):
        """Start a generation task and return its task id."""
        if self.demo_mode:
            log.info("[DEMO MODE] Suno generate: %s", title)
            return f"demo-task-{int(time.time() * 1000)}"

        payload = {
            "prompt": lyrics,
            "style": style,
            "title": title,
            "customMode": True,
            "instrumental": False,
            "model": self.model,
            "callBackUrl": callback_url,
        }
        if negative_tags:
            payload["negativeTags"] = negative_tags

        try:
            response = self.session.post(
                f"{self.base_url}/api/v1/generate", json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as e:
            raise SunoAPIError(f"Suno API request failed: {e}")

        data = self._unwrap(response)
        task_id = data.get("taskId") or data.get("task_id")
        if not task_id:
            raise SunoAPIError("Suno API response did not include a task id")
        log.info("Suno task %s started for '%s'", task_id, title)
        return task_id

    def record_info(self, task_id):
        if self.demo_mode and task_id.startswith("demo-"):
            return self._demo_record(task_id)

        try:
            response = self.session.get(
                f"{self.base_url}/api/v1/generate/record-info",
                params={"taskId": task_id},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SunoAPIError(f"Suno API request failed: {e}")
        return self._unwrap(response)

    def check_job_status(self, task_id):
        """Poll a task and normalize the answer.

        Never raises; a provider failure comes back as ``success: False``.
        """
        try:
            record = self.record_info(task_id)
        except SunoAPIError as e:
            log.error("Status check for task %s failed: %s", task_id, e)
            return {"success": False, "error": str(e)}

        raw_variants = (record.get("response") or {}).get("sunoData") or []
        variants = [normalize_variant(v) for v in raw_variants if isinstance(v, dict)]
        ready = next((v for v in variants if download_url(v)), None)
        return {
            "success": True,
            "taskId": task_id,
            "providerStatus": record.get("status"),
            "status": map_provider_state(record.get("status")),
            "variants": variants,
            "audioUrl": download_url(ready) if ready else None,
            "duration": ready.get("duration") if ready else None,
            "error": record.get("errorMessage"),
        }

    def timestamped_lyrics(self, task_id, audio_id):
        if self.demo_mode:
            log.info("[DEMO MODE] Suno timestamped lyrics: %s/%s", task_id, audio_id)
            return {"alignedWords": [], "waveformData": [], "hootCer": 0, "isStreamed": False}

        try:
            response = self.session.post(
                f"{self.base_url}/api/v1/generate/get-timestamped-lyrics",
                json={"taskId": task_id, "audioId": audio_id},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SunoAPIError(f"Suno API request failed: {e}")
        return self._unwrap(response)

    def _demo_record(self, task_id):
        started_ms = int(task_id.rsplit("-", 1)[-1])
        elapsed = time.time() - started_ms / 1000
        if elapsed < DEMO_GENERATION_SECONDS:
            return {"taskId": task_id, "status": "PENDING", "response": {"sunoData": []}}
        variants = [
            {
                "id": f"demo-song-{started_ms}-{i}",
                "audioUrl": f"/static/audio/demo-{i}.mp3",
                "sourceAudioUrl": f"/static/audio/demo-{i}.mp3",
                "streamAudioUrl": f"/static/audio/demo-{i}.mp3",
                "sourceStreamAudioUrl": f"/static/audio/demo-{i}.mp3",
                "imageUrl": "/static/images/demo-cover.png",
                "title": "Demo Song",
                "duration": 180.4,
            }
            for i in range(2)
        ]
        return {"taskId": task_id, "status": "SUCCESS", "response": {"sunoData": variants}}


def get_suno_client():
    return current_app.extensions["suno"]
