import logging
import os

from tesy_bridge import __version__

__all__ = [
    "ACCESSORY_CACHE_FILE",
    "APP_ID_PREFIX",
    "CMD_ON_OFF",
    "CMD_SET_MODE",
    "CMD_SET_TEMP",
    "DEFAULT_API_TIMEOUT",
    "DEFAULT_MAX_TEMP",
    "DEFAULT_MIN_TEMP",
    "DEFAULT_MODEL",
    "DEFAULT_PERSISTENT_DIR",
    "DEFAULT_PULL_INTERVAL_MS",
    "DIRECTORY_LANG",
    "DIRECTORY_URL",
    "DISCOVERY_MIN_INTERVAL",
    "ERROR_LOG_WINDOW",
    "HASS_BIRTH_MSG",
    "HASS_RECONNECT_DELAY",
    "HASS_WILL_MSG",
    "HEATING_THRESHOLD",
    "LOG_FORMATTER",
    "MANUFACTURER",
    "OUTBOUND_QUEUE_CAPACITY",
    "ORIGIN_STRUCT",
    "SRC_REPO_URL",
    "TELEMETRY_COMMAND",
    "TEMP_STEP",
    "TESY_BROKER_HOST",
    "TESY_BROKER_KEEPALIVE",
    "TESY_BROKER_PASS",
    "TESY_BROKER_PATH",
    "TESY_BROKER_PORT",
    "TESY_BROKER_RECONNECT_MAX",
    "TESY_BROKER_RECONNECT_PERIOD",
    "TESY_BROKER_USER",
    "TESY_DEBUG",
    "TESY_LOG_FORMAT",
    "TESY_LOG_OUTPUT",
    "TESY_VERSION",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")

LOG_FORMATTER = logging.Formatter(
    "%(asctime)s.%(msecs)d %(levelname)s [%(module)s:%(lineno)d] > %(message)s",
    "%m/%d/%y %H:%M:%S",
)
TESY_VERSION: str = __version__
SRC_REPO_URL: str = "https://github.com/tesy-bridge/tesy-bridge"
MANUFACTURER: str = "Tesy"
DEFAULT_MODEL: str = "cn05uv"
ORIGIN_STRUCT = {
    "name": "tesy-bridge",
    "sw_version": TESY_VERSION,
    "support_url": SRC_REPO_URL,
}

# Cloud directory
DIRECTORY_URL: str = "https://ad.mytesy.com/rest/get-my-devices"
DIRECTORY_LANG: str = "en"
DEFAULT_API_TIMEOUT: float = 10.0
# repeated directory failures inside this window are logged at debug
ERROR_LOG_WINDOW: float = 60.0

# Tesy broker (shared credentials baked into the vendor app)
TESY_BROKER_HOST: str = "mqtt.tesy.com"
TESY_BROKER_PORT: int = 8083
TESY_BROKER_PATH: str = "/mqtt"
TESY_BROKER_USER: str = "client1"
TESY_BROKER_PASS: str = "123"
TESY_BROKER_KEEPALIVE: int = 60
TESY_BROKER_RECONNECT_PERIOD: float = 5.0
TESY_BROKER_RECONNECT_MAX: float = 60.0
APP_ID_PREFIX: str = "hb"

CMD_ON_OFF: str = "onOff"
CMD_SET_MODE: str = "setMode"
CMD_SET_TEMP: str = "setTemp"
TELEMETRY_COMMAND: str = "setTempStatistic"
OUTBOUND_QUEUE_CAPACITY: int = 10

# Heater behaviour
DEFAULT_PULL_INTERVAL_MS: int = 60000
DEFAULT_MIN_TEMP: float = 10.0
DEFAULT_MAX_TEMP: float = 30.0
TEMP_STEP: float = 0.5
HEATING_THRESHOLD: float = 0.5
DISCOVERY_MIN_INTERVAL: float = 10.0

DEFAULT_PERSISTENT_DIR: str = os.environ.get("TESY_PERSISTENT_DIR", "~/.tesy-bridge")
ACCESSORY_CACHE_FILE: str = "accessories.yaml"

# Home Assistant exposure
HASS_BIRTH_MSG: str = os.environ.get("TESY_HASS_BIRTH_MSG", "online")
HASS_WILL_MSG: str = os.environ.get("TESY_HASS_WILL_MSG", "offline")
HASS_RECONNECT_DELAY: int = int(os.environ.get("TESY_HASS_RECONNECT_DELAY", "10"))

TESY_DEBUG = os.environ.get("TESY_DEBUG", "0").casefold() in YES_ANSWER

# Logging Configuration
TESY_LOG_FORMAT: str = os.environ.get("TESY_LOG_FORMAT", "human")  # "human" or "json"
TESY_LOG_OUTPUT: str = os.environ.get("TESY_LOG_OUTPUT", "stdout")  # "stdout" or "stderr"
