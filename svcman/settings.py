import json
import logging
import os
from dataclasses import asdict, dataclass, field

logger = logging.getLogger(__name__)

CONFIG_DIR = os.path.join(os.environ.get("APPDATA") or os.path.join(os.path.expanduser("~"), "AppData", "Roaming"), "svcman")
CONFIG_PATH = os.path.join(CONFIG_DIR, "settings.json")

SECTIONS = ("manager", "wait", "export", "logging")


@dataclass
class ManagerSettings:
    machine_name: str = ""    # empty = local machine
    allow_locking: bool = False
    live: bool = False        # re-query status/config on every read


@dataclass
class WaitSettings:
    fallback_wait_hint_ms: int = 5000


@dataclass
class ExportSettings:
    csv_delimiter: str = ";"
    sort_by_display_name: bool = False


@dataclass
class LoggingSettings:
    level: str = "WARNING"
    log_file: str = ""


def _merge(section, key: str, name: str, value):
    expected = type(getattr(section, name))
    # bool is an int subclass; keep the two apart
    if type(value) is not expected:
        raise ValueError(f"{key}.{name} must be {expected.__name__}, got {type(value).__name__}")
    setattr(section, name, value)


@dataclass
class Settings:
    manager: ManagerSettings = field(default_factory=ManagerSettings)
    wait: WaitSettings = field(default_factory=WaitSettings)
    export: ExportSettings = field(default_factory=ExportSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @staticmethod
    def load(path: str | None = None) -> "Settings":
        path = path or CONFIG_PATH
        s = Settings()
        try:
            if os.path.exists(path):
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError(f"expected an object, got {type(data).__name__}")
                for key in SECTIONS:
                    if isinstance(data.get(key), dict):
                        section = getattr(s, key)
                        for name, value in data[key].items():
                            if hasattr(section, name):
                                _merge(section, key, name, value)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load settings from %s: %s", path, e)
            return Settings()
        return s

    def save(self, path: str | None = None):
        path = path or CONFIG_PATH
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({key: asdict(getattr(self, key)) for key in SECTIONS}, f, ensure_ascii=False, indent=2)
