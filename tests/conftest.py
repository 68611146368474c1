import queue
import threading
import time

import pytest
from unittest.mock import MagicMock

import docker.errors
from docker.models.containers import ContainerCollection

from config.config_model import Settings
from docker_monitoring.docker_helpers import ContainerSnapshot, LifecycleEvent

_END = object()


def wait_for(predicate, timeout=2.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeLogStream:
    """Blocking chunk iterator; close() unblocks a reader the way closing the socket does."""

    def __init__(self):
        self._chunks = queue.Queue()
        self.closed = threading.Event()

    def feed(self, *chunks: bytes):
        for chunk in chunks:
            self._chunks.put(chunk)

    def end(self):
        self._chunks.put(_END)

    def fail(self, error: Exception):
        self._chunks.put(error)

    def close(self):
        self.closed.set()
        self._chunks.put(_END)

    def __iter__(self):
        while True:
            item = self._chunks.get()
            if self.closed.is_set():
                raise OSError("stream closed")
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class FakeRuntime:
    def __init__(self, containers=None):
        self.containers = list(containers or [])
        self.list_error: Exception | None = None
        self.open_error: Exception | None = None
        self.opened: list[tuple[str, object]] = []
        self.streams: dict[str, list[FakeLogStream]] = {}
        self.events = queue.Queue()
        self.events_closed = threading.Event()
        self._lock = threading.Lock()

    def list_running_containers(self):
        if self.list_error:
            raise self.list_error
        return list(self.containers)

    def open_log_stream(self, container_id, options):
        with self._lock:
            self.opened.append((container_id, options))
            if self.open_error:
                raise self.open_error
            stream = FakeLogStream()
            self.streams.setdefault(container_id, []).append(stream)
            return stream

    def stream_events(self):
        while True:
            item = self.events.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def close_events(self):
        self.events_closed.set()
        self.events.put(_END)

    def emit(self, action, container_id, service, event_time=100):
        self.events.put(event(action, container_id, service, event_time))

    def end_events(self):
        self.events.put(_END)

    def options_for(self, container_id):
        with self._lock:
            return [options for cid, options in self.opened if cid == container_id]

    def latest_stream(self, container_id) -> FakeLogStream:
        with self._lock:
            return self.streams[container_id][-1]


class RecordingSink:
    def __init__(self):
        self.lines: list[tuple[str, str]] = []
        self.lifecycle: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def line(self, service, text):
        with self._lock:
            self.lines.append((service, text))

    def watching(self, service, container_id):
        with self._lock:
            self.lifecycle.append(("watching", service, container_id))

    def started(self, service, container_id):
        with self._lock:
            self.lifecycle.append(("started", service, container_id))

    def stopped(self, service, container_id):
        with self._lock:
            self.lifecycle.append(("stopped", service, container_id))


def event(action, container_id, service, event_time=100):
    return LifecycleEvent(action=action, container=ContainerSnapshot(id=container_id, service=service), time=event_time)


def removed_while_listing_client():
    """
    Client whose real ContainerCollection lists two containers, one of which
    is gone by the time it gets inspected.
    """
    client = MagicMock()
    client.api.containers.return_value = [{"Id": "gone"}, {"Id": "c1"}]

    def inspect_container(container_id):
        if container_id == "gone":
            raise docker.errors.NotFound("No such container: gone")
        return {
            "Id": container_id,
            "Name": "/project-web-1",
            "Config": {"Labels": {"com.docker.compose.service": "web"}},
        }

    client.api.inspect_container.side_effect = inspect_container
    client.containers = ContainerCollection(client=client)
    return client


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def settings():
    return Settings()
