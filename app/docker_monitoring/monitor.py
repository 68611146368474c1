import logging
import threading
import traceback
import time
from typing import Callable, Iterable

from config.config_model import Settings
from docker_monitoring.docker_helpers import (
    ContainerSnapshot,
    LifecycleEvent,
    ServiceFilter,
    is_start,
    is_stop,
)
from docker_monitoring.watcher import Watcher


class WatcherRegistry:
    """
    Registry of watchers by container id.

    Watchers are created on the first start notification for an id and are kept
    after the container stops, so a restart of the same id resumes instead of
    replaying the backlog. All lookups and start/stop calls happen under one lock.
    """

    def __init__(self, watcher_factory: Callable[[str, str], Watcher]):
        self._by_id: dict[str, Watcher] = {}
        self._lock = threading.Lock()
        self._watcher_factory = watcher_factory

    def _get_or_create(self, container_id: str, service: str) -> Watcher:
        watcher = self._by_id.get(container_id)
        if watcher is None:
            watcher = self._watcher_factory(service, container_id)
            self._by_id[container_id] = watcher
        return watcher

    def get_or_create(self, container_id: str, service: str) -> Watcher:
        with self._lock:
            return self._get_or_create(container_id, service)

    def get(self, container_id: str) -> Watcher | None:
        with self._lock:
            return self._by_id.get(container_id)

    def start(self, container_id: str, service: str, event_time: int | float, force_backlog: bool = False) -> bool:
        """Look up or create the watcher for container_id and start it in one critical section."""
        with self._lock:
            return self._get_or_create(container_id, service).start(event_time, force_backlog=force_backlog)

    def stop(self, container_id: str) -> bool:
        with self._lock:
            if (watcher := self._by_id.get(container_id)) is None:
                return False
            return watcher.stop()

    def stop_all(self) -> int:
        with self._lock:
            return sum(1 for watcher in self._by_id.values() if watcher.stop())

    def threads(self) -> list[threading.Thread]:
        """Streaming threads of all watchers that are still alive."""
        with self._lock:
            return [w.thread for w in self._by_id.values() if w.thread is not None and w.thread.is_alive()]

    def active_ids(self) -> list[str]:
        with self._lock:
            return [container_id for container_id, watcher in self._by_id.items() if watcher.active]

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def __contains__(self, container_id) -> bool:
        with self._lock:
            return container_id in self._by_id


class DockerLogTailer:
    """
    Tails the logs of all containers that belong to the whitelisted services.

    Starts one thread that follows the Docker event feed and one that attaches to the
    containers already running. Start events (re)start the matching watcher,
    stop/die events stop it. Errors that leave the registry out of sync with Docker
    are fatal: they are stored in `fatal_error` and `shutdown_event` is set.
    """

    def __init__(self, runtime, services: Iterable[str] | ServiceFilter, sink, settings: Settings | None = None):
        self.runtime = runtime
        self.services = services if isinstance(services, ServiceFilter) else ServiceFilter(services)
        self.sink = sink
        self.settings = settings or Settings()
        self.logger = logging.getLogger(__name__)

        self.shutdown_event = threading.Event()
        self.fatal_error: str | None = None
        self.threads: list[threading.Thread] = []
        self.registry = WatcherRegistry(self._new_watcher)

    def _new_watcher(self, service: str, container_id: str) -> Watcher:
        return Watcher(
            service,
            container_id,
            runtime=self.runtime,
            sink=self.sink,
            settings=self.settings,
            on_fatal_error=self.fail,
        )

    def fail(self, reason: str):
        """Record the first fatal error and signal the main thread to exit."""
        if self.shutdown_event.is_set():
            self.logger.debug(f"Ignoring error during shutdown: {reason}")
            return
        self.logger.critical(reason)
        self.fatal_error = self.fatal_error or reason
        self.shutdown_event.set()

    def start(self):
        # Subscribe to events before listing so that no container start falls between the two
        self._start_thread(self._watch_events, "event-watcher")
        self._start_thread(self.bootstrap, "bootstrap")

    def _start_thread(self, target, name):
        thread = threading.Thread(target=target, name=name, daemon=True)
        self.threads.append(thread)
        thread.start()

    def bootstrap(self):
        """Attach to the containers that were already running when we started."""
        try:
            containers = self.runtime.list_running_containers()
        except Exception as e:
            self.logger.debug(traceback.format_exc())
            self.fail(f"Could not list running containers: {e}")
            return
        started_at = time.time() - self.settings.bootstrap_buffer_seconds
        for container in containers:
            self.attach(container, started_at)

    def attach(self, container: ContainerSnapshot, started_at: float):
        if not self.services.contains(container.service):
            return False
        self.sink.watching(container.service, container.id)
        return self.registry.start(container.id, container.service, started_at, force_backlog=True)

    def handle_event(self, event: LifecycleEvent):
        container = event.container
        if not self.services.contains(container.service):
            return
        if is_start(event.action):
            self.sink.started(container.service, container.id)
            self.registry.start(container.id, container.service, event.time)
        elif is_stop(event.action):
            self.sink.stopped(container.service, container.id)
            self.registry.stop(container.id)
        else:
            self.logger.debug(f"Unhandled container event for {container.service} {container.short_id}: {event.action}")

    def _watch_events(self):
        self.logger.debug("Docker Event Watcher started. Watching for container start/stop events...")
        try:
            for event in self.runtime.stream_events():
                if self.shutdown_event.is_set():
                    break
                self.handle_event(event)
        except Exception as e:
            self.logger.debug(traceback.format_exc())
            self.fail(f"Docker reported error: {e}")
            return
        if not self.shutdown_event.is_set():
            self.fail("Docker Event Stream ended unexpectedly.")

    def cleanup(self, timeout=1.5):
        """Stop all watchers and the event feed. Called on shutdown."""
        self.shutdown_event.set()
        stopped = self.registry.stop_all()
        self.logger.debug(f"Stopped {stopped} watchers.")
        try:
            self.runtime.close_events()
        except Exception as e:
            self.logger.warning(f"Error while trying to close Docker Event Stream: {e}")
        self._join(self.threads, timeout)
        # the feed threads may have started watchers after the first stop_all
        self.registry.stop_all()
        self._join(self.registry.threads(), timeout)

    def _join(self, threads, timeout):
        for thread in threads:
            if thread is not threading.current_thread() and thread.is_alive():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    self.logger.debug(f"Thread {thread.name} was not stopped")
