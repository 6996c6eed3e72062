import json
from types import SimpleNamespace

import requests

LLM_RESPONSE = """TITLE: Maya's Golden Day
MUSIC_STYLE: Acoustic Pop
LYRICS:
[Verse 1]
Candles burning bright tonight
Maya dancing in the light

[Chorus]
Happy birthday, sing it loud
Maya, you make us proud"""


class FakeResponse:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code
        self.text = json.dumps(body)

    def json(self):
        return self._body


class FakeSession:
    """Stands in for requests.Session; answers are queued per (method, path)."""

    def __init__(self):
        self.calls = []
        self.responses = {}

    def queue(self, method, path, body, status_code=200):
        self.responses.setdefault((method, path), []).append(FakeResponse(body, status_code))

    def _respond(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        path = url.split("://", 1)[-1]
        path = path[path.index("/"):]
        queue = self.responses.get((method, path))
        if not queue:
            raise requests.ConnectionError(f"no response queued for {method} {path}")
        # The last queued answer repeats.
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)

    def request(self, method, url, **kwargs):
        return self._respond(method, url, **kwargs)


class FakeGenAI:
    def __init__(self, text):
        self.text = text
        self.prompts = []
        self.models = self

    def generate_content(self, model, contents):
        self.prompts.append(contents)
        if isinstance(self.text, Exception):
            raise self.text
        return SimpleNamespace(text=self.text)


def suno_envelope(data, code=200, msg="success"):
    return {"code": code, "msg": msg, "data": data}


def record_info(status, variants=None, error=None, task_id="task-123"):
    return suno_envelope({
        "taskId": task_id,
        "status": status,
        "response": {"sunoData": variants or []},
        "errorMessage": error,
    })

