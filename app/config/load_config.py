import os
import logging
import yaml
from .config_model import GlobalConfig, ValidationError

logger = logging.getLogger(__name__)


class ConfigLoadError(Exception):
    """Raised when config file exists but cannot be loaded or parsed"""
    pass

TOP_LEVEL_KEYS = ["services", "settings"]

CONFIG_PATH_ENV = "COMPOSE_TAIL_CONFIG"

"""
This module handles configuration loading and validation using Pydantic models.
YAML configuration is loaded first, then environment variables are merged in, then
service names given on the command line. Later layers override earlier ones and the
merged configuration is validated with Pydantic.
"""

def merge_yaml_and_env(yaml_config, env_update):
    """
    Merge environment variables into the YAML configuration.
    """
    for key, value in env_update.items():
        if key == "settings":
            if not isinstance(yaml_config.get(key), dict):
                yaml_config[key] = {}
            for k, v in value.items():
                if v is not None:
                    yaml_config[key][k] = v
        elif value:
            yaml_config[key] = value
    return yaml_config


def convert_string_to_list(string: str | None) -> list:
    return [s.strip() for s in string.split(",") if s.strip()] if string else []


def load_env_config():
    ENV_SETTINGS = {
        "log_level": os.getenv("LOG_LEVEL"),
        "tail_lines": os.getenv("TAIL_LINES"),
        "since_offset_seconds": os.getenv("SINCE_OFFSET_SECONDS"),
        "bootstrap_buffer_seconds": os.getenv("BOOTSTRAP_BUFFER_SECONDS"),
        "service_label": os.getenv("SERVICE_LABEL"),
        # https://no-color.org
        "color": False if os.getenv("NO_COLOR") else None,
    }
    return {
        "services": convert_string_to_list(os.getenv("SERVICES")),
        "settings": ENV_SETTINGS,
    }


def resolve_config_path(path: str | None = None) -> str | None:
    """A config file is only read when passed explicitly or named in COMPOSE_TAIL_CONFIG."""
    return path or os.getenv(CONFIG_PATH_ENV) or None


def load_config(cli_services: list[str] | None = None, path: str | None = None):
    """
    Load, merge, and validate the application configuration from YAML, environment variables
    and the service names passed on the command line.
    Called from app.py
    Returns: tuple: (validated_config_object, config_file_path_used)
    """
    path = resolve_config_path(path)
    config_path = None
    yaml_config = None
    if path is None:
        logger.debug(f"No config file given, {CONFIG_PATH_ENV} is not set.")
    elif os.path.isfile(path):
        config_path = path
        try:
            with open(path, "r") as file:
                yaml_config = yaml.safe_load(file)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML file at {path}: {e}")
            raise ConfigLoadError(f"Error parsing YAML file at {path}: {e}") from e
        except OSError as e:
            logger.error(f"Unexpected error loading {path}: {e}")
            raise ConfigLoadError(f"Failed to load {path}: {e}") from e
        if yaml_config is not None and not isinstance(yaml_config, dict):
            raise ConfigLoadError(f"Expected a mapping at the top level of {path}")
        logger.info(f"The config file was found in {config_path}.")
    else:
        logger.warning(f"The config file {path} does not exist, using environment variables and arguments only.")

    yaml_config = yaml_config or {}
    for key in TOP_LEVEL_KEYS:
        if key not in yaml_config or yaml_config[key] is None:
            yaml_config[key] = {} if key == "settings" else []

    merged_config = merge_yaml_and_env(yaml_config, load_env_config())
    if cli_services:
        merged_config["services"] = list(cli_services)
    config = GlobalConfig.model_validate(merged_config)
    logger.debug(f"\n ------------- CONFIG ------------- \n{get_pretty_yaml_config(config)}\n ----------------------------------")

    return config, config_path


def get_pretty_yaml_config(config):
    """
    Convert a Pydantic config object to a pretty-printed YAML string.
    """
    config_dict = config.model_dump(exclude_none=True)
    return yaml.dump(config_dict, default_flow_style=False, sort_keys=False, indent=4)


def format_pydantic_error(e: ValidationError) -> str:
    """
    Format Pydantic validation errors for user-friendly display.
    """
    error_messages = []
    for error in e.errors():
        location = ".".join(map(str, error["loc"]))
        msg = error["msg"]
        msg = msg.split("[")[0].strip()  # Remove technical details in brackets
        error_messages.append(f"Field '{location}': {msg}")
    return "\n".join(error_messages)
