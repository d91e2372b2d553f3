import json
import os
import sys

import pytest

# Ensure the repository root is on sys.path so imports like `import app` and `import agents` work
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from app.config import Settings
from app.schema import Contact, Identity


def draft_json(subject="Hi there", message="Line1\nLine2") -> str:
    return json.dumps({"subject": subject, "message": message})


def parse_sse(text: str):
    """Split an SSE body into [(event_name, payload)] plus a heartbeat count."""
    frames, heartbeats = [], 0
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        if block.startswith(":"):
            heartbeats += 1
            continue
        name, data = None, None
        for line in block.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        frames.append((name, data))
    return frames, heartbeats


@pytest.fixture
def identity():
    return Identity(name="Jane Doe", band_name="The Lanterns", genre="folk", area="Austin, TX")


@pytest.fixture
def make_contacts():
    def _make(n: int):
        return [
            Contact(id=i + 1, first_name=f"First{i + 1}", company=f"Venue {i + 1}",
                    email=f"booker{i + 1}@venue.example")
            for i in range(n)
        ]
    return _make


@pytest.fixture
def settings():
    return Settings(
        openrouter_api_key="test-key",
        drafting_models=["m1", "m2", "m3"],
        drafts_concurrency_env=None,
        max_retries=5,
        heartbeat_seconds=15.0,
        max_duration_seconds=0,
        api_keys={"secret-key": "caller-1"},
        require_auth=True,
    )
