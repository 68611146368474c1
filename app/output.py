import sys
import threading
from colorama import Fore, Style

from docker_monitoring.docker_helpers import ServiceFilter


class ServiceLogSink:
    """
    Writes container log lines and lifecycle messages to a stream (stderr by default).

    Each line is prefixed with the right-aligned service name when more than one
    service is being tailed, so that interleaved output stays readable.
    Writes from the watcher threads are serialized with a lock so lines never interleave.
    """

    def __init__(self, services: ServiceFilter, stream=None, color: bool = True):
        self.services = services
        self.stream = stream if stream is not None else sys.stderr
        self.color = color
        self._lock = threading.Lock()

    def _colorize(self, text: str, *styles: str) -> str:
        if not self.color:
            return text
        return "".join(styles) + text + Style.RESET_ALL

    def prefix(self, service: str) -> str:
        if len(self.services) <= 1:
            return ""
        return self._colorize(service.rjust(self.services.width), Fore.CYAN) + " "

    def _write(self, service: str, text: str):
        with self._lock:
            self.stream.write(f"{self.prefix(service)}{text}\n")
            self.stream.flush()

    def line(self, service: str, text: str):
        self._write(service, text)

    def watching(self, service: str, container_id: str):
        self._lifecycle(service, "watching", Fore.GREEN, container_id)

    def started(self, service: str, container_id: str):
        self._lifecycle(service, "started", Fore.GREEN, container_id)

    def stopped(self, service: str, container_id: str):
        self._lifecycle(service, "stopped", Fore.RED, container_id)

    def _lifecycle(self, service: str, label: str, color: str, container_id: str):
        self._write(service, f"{self._colorize(label, color)} {self._colorize(container_id, Style.DIM)}")
