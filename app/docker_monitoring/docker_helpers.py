from dataclasses import dataclass
import logging
import time
from typing import Iterable, Iterator
from constants import COMPOSE_SERVICE_LABEL, ContainerAction, STOP_ACTIONS, WATCHED_DOCKER_EVENTS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContainerSnapshot:
    """
    Lightweight, immutable snapshot of the container metadata the tailer needs.

    Avoids passing heavy Docker container objects around.
    """
    id: str
    service: str
    name: str = ""

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @classmethod
    def from_container(cls, container, service_label: str = COMPOSE_SERVICE_LABEL) -> 'ContainerSnapshot':
        """Extract minimal metadata from a Docker container object."""
        labels = container.labels or {}
        return cls(
            id=container.id,
            service=labels.get(service_label, ""),
            name=container.name or "",
        )

    @classmethod
    def from_event(cls, event: dict, service_label: str = COMPOSE_SERVICE_LABEL) -> 'ContainerSnapshot':
        """Docker copies container labels into the event actor attributes."""
        actor = event.get("Actor") or {}
        attributes = actor.get("Attributes") or {}
        return cls(
            id=actor.get("ID") or event.get("id", ""),
            service=attributes.get(service_label, ""),
            name=attributes.get("name", ""),
        )


@dataclass(frozen=True)
class LifecycleEvent:
    action: str
    container: ContainerSnapshot
    time: int  # unix timestamp, whole seconds


def parse_event_time(event: dict) -> int | None:
    if event_time := event.get("time"):
        return int(event_time)
    if event_time_ns := event.get("timeNano"):
        return int(event_time_ns // 1_000_000_000)
    return None


def parse_lifecycle_event(event: dict, service_label: str = COMPOSE_SERVICE_LABEL) -> LifecycleEvent | None:
    """
    Turn a decoded Docker event into a LifecycleEvent.
    Returns None for events that are not about a container.
    """
    if not event or event.get("Type") != "container":
        return None
    container = ContainerSnapshot.from_event(event, service_label)
    if not container.id:
        logger.debug(f"Ignoring container event without an ID: {event}")
        return None
    event_time = parse_event_time(event)
    if event_time is None:
        logger.debug(f"Container event for {container.short_id} carries no timestamp: {event}")
        event_time = int(time.time())
    # Older daemons only set "status", newer ones set "Action" as well
    action = (event.get("Action") or event.get("status") or "").strip()
    return LifecycleEvent(action=action, container=container, time=event_time)


class ServiceFilter:
    """Fixed set of whitelisted service names."""

    def __init__(self, services: Iterable[str]):
        self._services = frozenset(services)
        self.width = max((len(s) for s in self._services), default=0)

    def contains(self, service: str | None) -> bool:
        return service in self._services

    def __contains__(self, service) -> bool:
        return self.contains(service)

    def __len__(self) -> int:
        return len(self._services)

    def __iter__(self):
        return iter(sorted(self._services))

    def __repr__(self) -> str:
        return f"ServiceFilter({sorted(self._services)!r})"


@dataclass(frozen=True)
class LogOptions:
    """Fetch options for a container log stream. Exactly one of tail/since is set."""
    tail: int | None = None
    since: int | None = None


class DockerRuntime:
    """
    Thin wrapper around a docker.DockerClient exposing only what the tailer needs:
    container listing, the event feed and follow-mode log streams.
    """

    def __init__(self, client, service_label: str = COMPOSE_SERVICE_LABEL):
        self.client = client
        self.service_label = service_label
        self.event_stream = None

    def list_running_containers(self) -> list[ContainerSnapshot]:
        # containers removed between the listing and their inspect call are skipped
        containers = self.client.containers.list(ignore_removed=True)
        return [ContainerSnapshot.from_container(c, self.service_label) for c in containers]

    def stream_events(self) -> Iterator[LifecycleEvent]:
        self.event_stream = self.client.events(
            decode=True,
            filters={"type": "container", "event": WATCHED_DOCKER_EVENTS},
        )
        for event in self.event_stream:
            if (lifecycle_event := parse_lifecycle_event(event, self.service_label)) is not None:
                yield lifecycle_event

    def close_events(self):
        if self.event_stream is not None:
            self.event_stream.close()
            self.event_stream = None

    def open_log_stream(self, container_id: str, options: LogOptions):
        """
        Open a follow-mode log stream. The returned CancellableStream yields raw chunks;
        docker-py already strips the stdout/stderr frame headers.
        """
        kwargs = {}
        if options.since is not None:
            kwargs["since"] = options.since
        else:
            kwargs["tail"] = options.tail if options.tail is not None else "all"
        return self.client.api.logs(
            container_id,
            stdout=True,
            stderr=True,
            stream=True,
            follow=True,
            **kwargs,
        )


def is_start(action: str) -> bool:
    return action == ContainerAction.START.value


def is_stop(action: str) -> bool:
    return action in [a.value for a in STOP_ACTIONS]
