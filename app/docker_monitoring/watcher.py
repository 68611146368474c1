import logging
import threading
import traceback
from typing import Callable

from constants import DEFAULT_TAIL_LINES, DEFAULT_SINCE_OFFSET_SECONDS, MAX_LINE_BUFFER_SIZE
from docker_monitoring.docker_helpers import LogOptions

logger = logging.getLogger(__name__)


def resumption_options(event_time: int | float, previously_started: bool,
                       tail_lines: int = DEFAULT_TAIL_LINES,
                       since_offset: int = DEFAULT_SINCE_OFFSET_SECONDS) -> LogOptions:
    """
    Pick the log fetch options for a (re)started container.

    The first time a container is tailed we want a bounded piece of its backlog.
    When the same container id is started again, its old log stream ended when it stopped
    and a fresh stream would replay everything from before the stop, so we only ask for
    logs since the start event. Docker's since filter has a resolution of one second and
    is not strictly ordered against the start event, so we go back `since_offset` seconds
    and accept that a few lines around the restart may be repeated.
    """
    if not previously_started:
        return LogOptions(tail=tail_lines)
    # docker-py rejects since values <= 0
    return LogOptions(since=max(int(event_time) - since_offset, 1))


class StreamHandle:
    """
    Cancellation handle for one streaming task.

    cancel() closes the log stream the task is blocked on, which makes the
    blocking socket read return. A stream attached after cancel() is closed right away.
    """

    def __init__(self):
        self.cancelled = threading.Event()
        self.finished = threading.Event()
        self._stream = None
        self._lock = threading.Lock()

    def attach(self, stream) -> bool:
        with self._lock:
            if not self.cancelled.is_set():
                self._stream = stream
                return True
        _close_quietly(stream)
        return False

    def cancel(self):
        with self._lock:
            self.cancelled.set()
            stream, self._stream = self._stream, None
        if stream is not None:
            _close_quietly(stream)

    def is_running(self) -> bool:
        return not self.finished.is_set()


def _close_quietly(stream):
    try:
        stream.close()
    except Exception as e:
        logger.debug(f"Error while closing log stream: {e}")


class Watcher:
    """
    Tailing state for one container id.

    Inactive until start() is called; start() hands a StreamHandle to a new thread that
    streams the container's logs into the sink. stop() cancels that handle.
    Both calls return immediately and are no-ops when the watcher is already in the
    requested state. They are serialized by the WatcherRegistry lock.
    """

    def __init__(self, service: str, container_id: str, runtime, sink, settings=None,
                 on_fatal_error: Callable[[str], None] | None = None):
        self.service = service
        self.container_id = container_id
        self.runtime = runtime
        self.sink = sink
        self.tail_lines = settings.tail_lines if settings else DEFAULT_TAIL_LINES
        self.since_offset = settings.since_offset_seconds if settings else DEFAULT_SINCE_OFFSET_SECONDS
        self.on_fatal_error = on_fatal_error
        self.handle: StreamHandle | None = None
        self.thread: threading.Thread | None = None
        self.previously_started = False

    @property
    def short_id(self) -> str:
        return self.container_id[:12]

    @property
    def active(self) -> bool:
        return self.handle is not None and self.handle.is_running()

    def start(self, event_time: int | float, force_backlog: bool = False) -> bool:
        """
        Start streaming logs unless a stream is already running.
        force_backlog: use the first-start policy even if this id was started before.
        Returns True if a new streaming thread was launched.
        """
        if self.active:
            logger.debug(f"{self.service}: Watcher for {self.short_id} is already running.")
            return False
        previously_started = self.previously_started and not force_backlog
        options = resumption_options(event_time, previously_started, self.tail_lines, self.since_offset)
        self.handle = StreamHandle()
        self.thread = threading.Thread(
            target=self._run,
            args=(self.handle, options),
            name=f"watcher-{self.service}-{self.short_id}",
            daemon=True,
        )
        self.thread.start()
        self.previously_started = True
        return True

    def stop(self) -> bool:
        """Cancel the running stream. Returns True if there was one."""
        if self.handle is None:
            return False
        handle, self.handle = self.handle, None
        was_running = handle.is_running()
        handle.cancel()
        return was_running

    def _run(self, handle: StreamHandle, options: LogOptions):
        try:
            self._stream_logs(handle, options)
        finally:
            handle.finished.set()

    def _stream_logs(self, handle: StreamHandle, options: LogOptions):
        logger.debug(f"{self.service}: Opening log stream for {self.short_id} with {options}")
        try:
            log_stream = self.runtime.open_log_stream(self.container_id, options)
        except Exception as e:
            if handle.cancelled.is_set():
                logger.debug(f"{self.service}: Log stream for {self.short_id} was cancelled while opening: {e}")
                return
            logger.error(f"{self.service}: Could not open log stream for {self.short_id}: {e}")
            logger.debug(traceback.format_exc())
            if self.on_fatal_error:
                self.on_fatal_error(f"Could not open log stream for container {self.container_id}: {e}")
            return
        if not handle.attach(log_stream):
            logger.debug(f"{self.service}: Watcher for {self.short_id} was stopped before the log stream opened.")
            return

        buffer = b""
        try:
            for chunk in log_stream:
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    self._emit(line)
                if len(buffer) > MAX_LINE_BUFFER_SIZE:
                    logger.warning(f"{self.service}: Log line of {self.short_id} exceeds {MAX_LINE_BUFFER_SIZE} bytes, flushing it.")
                    self._emit(buffer)
                    buffer = b""
            if buffer and not handle.cancelled.is_set():
                self._emit(buffer)
        except Exception as e:
            if handle.cancelled.is_set():
                logger.debug(f"{self.service}: Log stream for {self.short_id} was cancelled: {e}")
                return
            logger.error(f"{self.service}: Error while reading logs of {self.short_id}: {e}")
            logger.debug(traceback.format_exc())
            return
        finally:
            # releases the connection when the stream ended on its own
            handle.cancel()
        logger.debug(f"{self.service}: Log stream for {self.short_id} ended.")

    def _emit(self, line: bytes):
        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError:
            text = line.decode("utf-8", errors="replace")
        self.sink.line(self.service, text.rstrip("\r"))
