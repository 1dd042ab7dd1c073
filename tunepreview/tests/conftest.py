import os
import sys
from typing import List

import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()

from tunepreview.application.catalog import TrackCatalog  # noqa: E402
from tunepreview.application.session import PlaybackSession  # noqa: E402
from tunepreview.domain.entities import MediaStatus, Track, TrackRecord  # noqa: E402


class FakeHandle:
    """Opaque resource handle; compared by identity."""

    def __init__(self, uri, autoplay, on_status):
        self.uri = uri
        self.autoplay = autoplay
        self.on_status = on_status
        self.closed = False


class FakeMediaBackend:
    """In-memory media backend recording every call.

    Status events are only delivered when a test calls ``emit``.
    """

    def __init__(self):
        self.handles: List[FakeHandle] = []
        self.calls = []
        self.failing_uris = set()
        self.fail_transport = False

    @property
    def open_handles(self) -> List[FakeHandle]:
        return [h for h in self.handles if not h.closed]

    def open(self, uri, autoplay, on_status):
        self.calls.append(('open', uri))
        if uri in self.failing_uris:
            raise OSError(f"unsupported media: {uri}")
        handle = FakeHandle(uri, autoplay, on_status)
        self.handles.append(handle)
        return handle

    def play(self, handle):
        self._transport('play', handle)

    def pause(self, handle):
        self._transport('pause', handle)

    def seek(self, handle, position_ms):
        self._transport('seek', handle, position_ms)

    def close(self, handle):
        self.calls.append(('close', handle))
        handle.closed = True

    def _transport(self, name, handle, *args):
        self.calls.append((name, handle) + args)
        if self.fail_transport:
            raise OSError(f"{name} failed")

    def emit(self, handle, **fields):
        handle.on_status(handle, MediaStatus(**fields))

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]


class FakeNotifier:
    def __init__(self):
        self.messages = []

    def notify(self, title, message):
        self.messages.append((title, message))


class FakeSearchProvider:
    def __init__(self, records=None):
        self.records = list(records or [])
        self.error = None
        self.queries = []

    def search(self, term, limit=20):
        self.queries.append((term, limit))
        if self.error is not None:
            raise self.error
        return self.records[:limit]


def make_track(n: int, **overrides) -> Track:
    fields = dict(
        id=f"t{n}",
        title=f"Song {n}",
        artist=f"Artist {n}",
        preview_url=f"https://audio.example.com/preview{n}.m4a",
        duration_ms=30000,
    )
    fields.update(overrides)
    return Track(**fields)


def make_record(n: int, **overrides) -> TrackRecord:
    fields = dict(
        id=str(n),
        title=f"Song {n}",
        artist=f"Artist {n}",
        preview_url=f"https://audio.example.com/preview{n}.m4a",
        duration_ms=200000,
    )
    fields.update(overrides)
    return TrackRecord(**fields)


@pytest.fixture(autouse=True)
def _clear_tunepreview_env():
    """Ensure TUNEPREVIEW_* settings do not leak across tests."""
    keys = [k for k in os.environ if k.startswith('TUNEPREVIEW_')]
    backup = {k: os.environ.get(k) for k in keys}
    for k in keys:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k in [k for k in os.environ if k.startswith('TUNEPREVIEW_')]:
            os.environ.pop(k, None)
        for k, v in backup.items():
            if v is not None:
                os.environ[k] = v


@pytest.fixture
def backend():
    return FakeMediaBackend()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def search_provider():
    return FakeSearchProvider([make_record(n) for n in range(1, 4)])


@pytest.fixture
def tracks():
    return [make_track(n) for n in range(1, 4)]


@pytest.fixture
def catalog(tracks, search_provider):
    catalog = TrackCatalog(search_provider)
    catalog.replace(tracks)
    return catalog


@pytest.fixture
def session(backend, catalog, notifier):
    session = PlaybackSession(backend, catalog, notifier, session_id="test-session")
    yield session
    session.dispose()


@pytest.fixture
def track_factory():
    return make_track


@pytest.fixture
def record_factory():
    return make_record
