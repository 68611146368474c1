import sys
import signal
import threading
import logging
import traceback
import docker
import docker.errors
import requests
from pydantic import ValidationError
from typing import List

from config.load_config import load_config, format_pydantic_error, ConfigLoadError
from docker_monitoring.docker_helpers import DockerRuntime, ServiceFilter
from docker_monitoring.monitor import DockerLogTailer
from output import ServiceLogSink

logging.basicConfig(
    level="INFO",
    format="%(asctime)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler()
    ]
)
logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
logging.getLogger("docker").setLevel(logging.INFO)


def create_handle_signal(tailer: DockerLogTailer):
    """
    Create signal handler for graceful shutdown.

    Returns:
        tuple: (signal_handler_function, global_shutdown_event)
    """
    global_shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logging.debug(f"Received signal {signum}, shutting down...")
        global_shutdown_event.set()
        tailer.shutdown_event.set()

    return handle_signal, global_shutdown_event


def create_docker_client() -> docker.DockerClient:
    """
    Create a Docker client from the environment (DOCKER_HOST, DOCKER_TLS_VERIFY, DOCKER_CERT_PATH)
    and make sure the daemon is reachable. Exits the process if it is not.
    """
    try:
        client = docker.from_env()
        client.ping()
    except (docker.errors.DockerException, requests.exceptions.ConnectionError) as e:
        logging.critical(f"Could not connect to the Docker daemon: {e}")
        logging.debug(f"Traceback: {traceback.format_exc()}")
        sys.exit(1)
    logging.debug(f"Connected to Docker Client on {client.api.base_url}")
    return client


def start_tailer(services: List[str]) -> DockerLogTailer:
    """
    Loads config, sets up the Docker client, the log tailer and signal handlers.

    Returns:
        DockerLogTailer: the running tailer
    """
    try:
        config, _ = load_config(cli_services=services)
    except (ValidationError, ConfigLoadError) as e:
        if isinstance(e, ValidationError):
            logging.critical(f"Config validation failed: {format_pydantic_error(e)}")
        else:
            logging.critical(f"Config loading failed: {e}")
        sys.exit(1)

    logging.getLogger().setLevel(getattr(logging, config.settings.log_level, logging.INFO))
    if not config.services:
        logging.critical("No services to tail. Pass service names as arguments or set SERVICES.")
        sys.exit(1)

    service_filter = ServiceFilter(config.services)
    sink = ServiceLogSink(service_filter, stream=sys.stderr, color=config.settings.color)
    runtime = DockerRuntime(create_docker_client(), service_label=config.settings.service_label)
    tailer = DockerLogTailer(runtime, service_filter, sink, config.settings)
    logging.debug(f"Tailing logs for services: {', '.join(config.services)}")
    tailer.start()
    return tailer


def main(argv: List[str] | None = None) -> int:
    services = sys.argv[1:] if argv is None else argv
    tailer = start_tailer(services)
    handle_signal, global_shutdown_event = create_handle_signal(tailer)
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    while not tailer.shutdown_event.wait(1):
        pass
    tailer.cleanup()
    if tailer.fatal_error and not global_shutdown_event.is_set():
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
