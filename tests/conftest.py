import json

import pytest


class FakeSink:
    """Subscriber that records frames; ``ok=False`` makes every send fail."""

    def __init__(self, ok=True):
        self.ok = ok
        self.frames = []
        self.closed = False

    def send(self, frame):
        if not self.ok:
            return False
        self.frames.append(frame)
        return True

    def close(self):
        self.closed = True

    def events(self):
        return [decode_frame(f) for f in self.frames]


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


def decode_frame(frame):
    """'event: x\\ndata: {...}\\n\\n' -> ('x', {...})"""
    event, data = None, None
    for line in frame.strip().splitlines():
        if line.startswith("event: "):
            event = line[len("event: "):]
        elif line.startswith("data: "):
            data = json.loads(line[len("data: "):])
    return event, data


@pytest.fixture
def clock():
    return FakeClock()
