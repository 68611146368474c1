from enum import Enum


COMPOSE_SERVICE_LABEL = "com.docker.compose.service"

DEFAULT_TAIL_LINES = 1000
DEFAULT_SINCE_OFFSET_SECONDS = 1
DEFAULT_BOOTSTRAP_BUFFER_SECONDS = 1

# Upper bound for a single unterminated log line held in the read buffer
MAX_LINE_BUFFER_SIZE = 10 * 1024 * 1024  # 10MB


class ContainerAction(str, Enum):
    START = "start"
    STOP = "stop"
    DIE = "die"


STOP_ACTIONS = (ContainerAction.STOP, ContainerAction.DIE)

# Docker event names the event watcher subscribes to
WATCHED_DOCKER_EVENTS = [action.value for action in ContainerAction]
