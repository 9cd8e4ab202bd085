import json
import os

import pytest

from argus.config import Config
from argus.store import EntityStore


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float):
        self.now += int(seconds * 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return EntityStore(completed_work_limit=5, clock=clock)


@pytest.fixture
def cfg(tmp_path):
    root = tmp_path / "projects"
    root.mkdir()
    return Config(
        transcript_roots=[str(root)],
        poll_interval=3600,
        reap_interval=3600,
        ping_interval=3600,
        completed_work_limit=5,
    )


def user(text, cwd=None):
    record = {"type": "user", "message": {"role": "user", "content": text}}
    if cwd:
        record["cwd"] = cwd
    return record


def assistant(*blocks, cwd=None):
    record = {"type": "assistant", "message": {"role": "assistant", "content": list(blocks)}}
    if cwd:
        record["cwd"] = cwd
    return record


def text_block(text):
    return {"type": "text", "text": text}


def tool(name, **payload):
    return {"type": "tool_use", "name": name, "input": payload}


def system(content):
    return {"type": "system", "content": content}


def write_transcript(path, records, mtime=None):
    """Write records as JSONL; strings are written verbatim as raw lines."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path
