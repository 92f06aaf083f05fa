import yaml
from pathlib import Path
import os
from typing import Any, Dict, Optional, List, Callable
import logging
import threading
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileModifiedEvent
import time
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

# Keys whose values are never written to the log
SECRET_KEYS = frozenset({"api_token", "password", "token", "refresh_token", "client_secret"})


class LMSConfig(BaseModel):
    """Immutable view of the settings the engine and clients consume."""

    model_config = ConfigDict(frozen=True)

    lms_type: str = "canvas"
    lms_url: str = ""
    api_token: str = ""
    refresh_token: str = ""
    username: str = ""
    password: str = ""
    use_credential_login: bool = False
    check_interval: int = 15  # minutes
    sound_enabled: bool = True
    download_path: str = ""
    request_timeout: float = 30
    upload_timeout: float = 120

    @field_validator("check_interval")
    @classmethod
    def _at_least_one_minute(cls, value: int) -> int:
        return max(1, int(value))

    @property
    def is_complete(self) -> bool:
        """URL plus either a token or (in credential mode) a username and password."""
        if not self.lms_url:
            return False
        if self.use_credential_login:
            return bool(self.username and self.password)
        return bool(self.api_token)


class ConfigChangeHandler(FileSystemEventHandler):
    def __init__(self, config):
        self.config = config
        self.last_modified = 0
        self.cooldown = 1.0  # seconds

    def on_modified(self, event):
        if not isinstance(event, FileModifiedEvent):
            return

        current_time = time.time()
        if current_time - self.last_modified < self.cooldown:
            return

        if event.src_path == str(self.config.config_file):
            try:
                self.last_modified = current_time
                self.config.reload()
            except Exception as e:
                logging.error(f"Error handling config change: {e}")


class Config:
    """
    YAML settings gateway. Values like ${LMS_API_TOKEN} are resolved from the
    environment (and a .env file next to the config). With watch=True the file is
    monitored and change callbacks receive the new data dict.
    """

    def __init__(self, config_path: Optional[str] = None, watch: bool = True):
        logging.debug("Initializing Config class")

        self.change_callbacks: List[Callable] = []
        self._loading = False  # guards against recursive reloads
        self._write_lock = threading.Lock()
        self._ignore_until = 0.0

        if config_path:
            self.config_file = Path(config_path).resolve()
            self.config_dir = self.config_file.parent
        else:
            self.config_dir = Path.cwd()
            self.config_file = self.config_dir / "config.yaml"

        logging.debug(f"Using config file: {self.config_file}")

        self._load_env_file()
        self._ensure_config_exists()
        self._load_config()

        self.observer = None
        if watch:
            self.observer = Observer()
            handler = ConfigChangeHandler(self)
            logging.info(f"Path monitored for reloading: {self.config_dir}")
            self.observer.schedule(handler, str(self.config_dir), recursive=False)
            self.observer.start()

    def register_change_callback(self, callback: Callable) -> None:
        """Register a callback to be called when config changes"""
        self.change_callbacks.append(callback)

    def reload(self) -> None:
        """Reload config and notify listeners"""
        if self._loading:
            return
        if time.time() < self._ignore_until:
            # our own save_settings write
            return

        self._loading = True
        try:
            logging.info("Config file change detected - reloading configuration")

            # Wait briefly for file to be fully written
            time.sleep(0.1)

            old_config = self.data.copy() if hasattr(self, 'data') else {}
            self._load_config()

            if old_config == self.data:
                logging.debug("Config file touched but content unchanged")
                return

            self._log_config_changes(old_config, self.data)
            self._notify()

        except Exception as e:
            logging.error(f"Error reloading config: {e}")
            logging.exception(e)
        finally:
            self._loading = False

    def _notify(self) -> None:
        for callback in self.change_callbacks:
            try:
                callback(self.data)
            except Exception as e:
                logging.error(f"Error in config change callback: {e}")

    def _log_config_changes(self, old_config: Dict, new_config: Dict) -> None:
        """Log the differences between old and new configs"""
        def shown(key: str, value: Any) -> Any:
            return "***" if key in SECRET_KEYS and value else value

        def compare_dict(path: str, dict1: Dict, dict2: Dict) -> None:
            all_keys = set(dict1.keys()) | set(dict2.keys())
            for key in all_keys:
                current_path = f"{path}.{key}" if path else key

                if key in dict1 and key in dict2:
                    if isinstance(dict1[key], dict) and isinstance(dict2[key], dict):
                        compare_dict(current_path, dict1[key], dict2[key])
                    elif dict1[key] != dict2[key]:
                        logging.info(
                            f"Config changed: {current_path}: {shown(key, dict1[key])} -> {shown(key, dict2[key])}"
                        )
                elif key in dict1:
                    logging.info(f"Config removed: {current_path}: {shown(key, dict1[key])}")
                else:
                    logging.info(f"Config added: {current_path}: {shown(key, dict2[key])}")

        logging.info("=== Configuration Changes Detected ===")
        compare_dict("", old_config, new_config)
        logging.info("=== End of Configuration Changes ===")

    def cleanup(self) -> None:
        """Stop the file observer"""
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None

    def _default_config(self) -> Dict[str, Any]:
        return {
            "lms": {
                "type": "canvas",
                "url": "",
                "api_token": "${LMS_API_TOKEN}",
                "username": "",
                "password": "",
                "use_credential_login": False,
            },
            "check_interval": 15,  # minutes
            "sound_enabled": True,
            "download_path": str(Path.home() / "Downloads"),
            "timeouts": {
                "request": 30,
                "upload": 120,
            },
            "logging": {
                "level": "INFO",
                "file": str(self.config_dir / "lms_center.log"),
            },
            "database": {
                "path": str(self.config_dir / "lms_center.db"),
            },
            "api": {
                "enabled": True,
                "host": "127.0.0.1",
                "port": 8765,
            },
        }

    def _ensure_config_exists(self) -> None:
        """Create default config if it doesn't exist"""
        if not self.config_dir.exists():
            logging.info(f"Creating config directory: {self.config_dir}")
            self.config_dir.mkdir(parents=True)

        if not self.config_file.exists():
            logging.info(f"Creating default config file: {self.config_file}")
            self.config_file.write_text(yaml.safe_dump(self._default_config(), sort_keys=False))

    def _load_env_file(self) -> None:
        """Load environment variables from the first .env found; existing variables win."""
        env_files = [
            self.config_dir / ".env",
            self.config_dir.parent / ".env",
            Path.cwd() / ".env",
        ]
        env_file = next((path for path in env_files if path.exists()), None)
        if not env_file:
            logging.debug("No .env file found, skipping environment variable loading")
            return

        logging.info(f"Loading environment variables from: {env_file}")
        try:
            load_dotenv(env_file, override=False)
        except Exception as e:
            logging.warning(f"Error loading .env file: {e}")

    def _substitute_env_vars(self, data: Any) -> Any:
        """Recursively substitute environment variables in config data"""
        if isinstance(data, dict):
            return {key: self._substitute_env_vars(value) for key, value in data.items()}
        elif isinstance(data, list):
            return [self._substitute_env_vars(item) for item in data]
        elif isinstance(data, str):
            # ${VAR_NAME} or $VAR_NAME; unresolved references read as empty
            if data.startswith('${') and data.endswith('}'):
                return os.environ.get(data[2:-1], "")
            elif data.startswith('$') and len(data) > 1:
                return os.environ.get(data[1:], "")
            return data
        else:
            return data

    def _read_raw(self) -> Dict[str, Any]:
        with open(self.config_file) as f:
            raw = yaml.safe_load(f)
        if not isinstance(raw, dict):
            raise ValueError("Invalid config format: root must be a dictionary")
        return raw

    def _load_config(self) -> None:
        """Load configuration from file"""
        try:
            logging.debug(f"Loading config from: {self.config_file}")
            new_data = self._substitute_env_vars(self._read_raw())

            for section in ("logging", "database"):
                key = "file" if section == "logging" else "path"
                if isinstance(new_data.get(section), dict) and new_data[section].get(key):
                    new_data[section][key] = os.path.expanduser(new_data[section][key])
            if new_data.get("download_path"):
                new_data["download_path"] = os.path.expanduser(new_data["download_path"])

            self.data = new_data

        except Exception as e:
            logging.error(f"Error loading config: {e}")
            if hasattr(self, 'data'):
                logging.info("Keeping previous configuration")
            else:
                logging.info("Using default configuration")
                self.data = self._substitute_env_vars(self._default_config())

    def get_settings(self) -> LMSConfig:
        """Current settings as an immutable LMSConfig."""
        lms = self.data.get("lms") or {}
        timeouts = self.data.get("timeouts") or {}
        values = {
            "lms_type": lms.get("type"),
            "lms_url": lms.get("url"),
            "api_token": lms.get("api_token"),
            "refresh_token": lms.get("refresh_token"),
            "username": lms.get("username"),
            "password": lms.get("password"),
            "use_credential_login": lms.get("use_credential_login"),
            "check_interval": self.data.get("check_interval"),
            "sound_enabled": self.data.get("sound_enabled"),
            "download_path": self.data.get("download_path"),
            "request_timeout": timeouts.get("request"),
            "upload_timeout": timeouts.get("upload"),
        }
        # YAML nulls fall back to the model defaults
        return LMSConfig(**{k: v for k, v in values.items() if v is not None})

    def is_configured(self) -> bool:
        return self.get_settings().is_complete

    def save_settings(self, **updates: Any) -> None:
        """
        Persist LMSConfig fields (e.g. api_token after login) to the YAML file.

        The raw file is updated so ${VAR} references in untouched keys survive.
        Registered callbacks are notified once; the watcher ignores the write.
        """
        field_paths = {
            "lms_type": ("lms", "type"),
            "lms_url": ("lms", "url"),
            "api_token": ("lms", "api_token"),
            "refresh_token": ("lms", "refresh_token"),
            "username": ("lms", "username"),
            "password": ("lms", "password"),
            "use_credential_login": ("lms", "use_credential_login"),
            "check_interval": ("check_interval",),
            "sound_enabled": ("sound_enabled",),
            "download_path": ("download_path",),
            "request_timeout": ("timeouts", "request"),
            "upload_timeout": ("timeouts", "upload"),
        }
        unknown = set(updates) - set(field_paths)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        with self._write_lock:
            raw = self._read_raw()
            for name, value in updates.items():
                path = field_paths[name]
                target = raw
                for part in path[:-1]:
                    if not isinstance(target.get(part), dict):
                        target[part] = {}
                    target = target[part]
                target[path[-1]] = value

            self._ignore_until = time.time() + 2.0
            with open(self.config_file, "w") as f:
                yaml.safe_dump(raw, f, sort_keys=False)

            old_config = self.data.copy()
            self._load_config()
            logging.info(f"Saved settings: {', '.join(sorted(updates))}")
            self._log_config_changes(old_config, self.data)
        self._notify()
