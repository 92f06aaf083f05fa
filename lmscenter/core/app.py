from typing import Dict, Any, Optional, List
import logging
import sys
import threading

from lmscenter.clients.base import Assignment
from lmscenter.services.auth import AuthService, LoginCredentials, token_updates
from lmscenter.services.checker import AssignmentChecker, CheckerStatus
from lmscenter.services.downloader import FileDownloader
from lmscenter.services.notifications import RecentNotificationSink
from .config import Config, LMSConfig
from .task_manager import TaskManager


class LMSCenterApp:
    def __init__(self, config_path: Optional[str] = None, watch_config: bool = True):
        self.logger = logging.getLogger(self.__class__.__name__)
        self._stop_event = threading.Event()

        self.config = Config(config_path=config_path, watch=watch_config)
        self.config.register_change_callback(self.handle_config_change)
        self._settings = self.config.get_settings()

        self._setup_logging()

        # Initialize database (before the checker so the view store has its tables)
        from .db import init_db
        init_db(self.config.data)

        self.task_manager = TaskManager()
        self.notifications = RecentNotificationSink()
        self.auth_service = AuthService(timeout=self.config.get_settings().request_timeout)
        self.checker = AssignmentChecker(self.config, self.notifications, task_manager=self.task_manager)
        self.checker.register_snapshot_callback(self._store_snapshot)
        self.checker.register_new_assignments_callback(self._on_new_assignments)
        self.checker.register_status_callback(self._on_status)

    def _setup_logging(self):
        """Configure logging to write to both file and stdout"""
        log_config = self.config.data.get("logging") or {}
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
        root_logger.setLevel(getattr(logging, str(log_config.get("level", "INFO")).upper(), logging.INFO))

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
        )

        if log_config.get("file"):
            file_handler = logging.FileHandler(log_config["file"])
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        # per-request chatter from urllib3 drowns out the checker at DEBUG
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("watchdog").setLevel(logging.WARNING)

        logging.info("LMS Center starting...")

    def _store_snapshot(self, assignments: List[Assignment]) -> None:
        from lmscenter.services.assignments import save_assignments

        lms_type = self.config.get_settings().lms_type
        try:
            save_assignments(lms_type, assignments)
        except Exception as e:
            self.logger.error(f"Error saving assignment list: {e}")

    def _on_new_assignments(self, assignments: List[Assignment]) -> None:
        self.logger.info(f"{len(assignments)} new assignment(s): {', '.join(a.name for a in assignments)}")

    def _on_status(self, status: CheckerStatus) -> None:
        self.logger.debug(f"Checker status: {status.state.value} (last error: {status.last_error})")

    def create_downloader(self) -> FileDownloader:
        settings = self.config.get_settings()
        return FileDownloader(settings.download_path, settings.lms_type, settings.api_token)

    def login_if_needed(self, force: bool = False) -> bool:
        """
        Credential mode with no stored token (or ``force``): log in and persist the token.
        Returns True if a login was attempted and succeeded.
        """
        settings = self.config.get_settings()
        if not settings.use_credential_login or (settings.api_token and not force):
            return False
        if not (settings.lms_url and settings.username and settings.password):
            return False

        self.logger.info(f"Logging in to {settings.lms_url} as {settings.username}")
        result = self.auth_service.login(LoginCredentials(
            username=settings.username,
            password=settings.password,
            lms_url=settings.lms_url,
            lms_type=settings.lms_type,
        ))
        if not result.success:
            self.logger.error(f"Login failed: {result.error}")
            return False
        # save_settings notifies handle_config_change, which restarts the checker
        self.config.save_settings(**token_updates(result))
        return True

    def handle_config_change(self, new_config: Dict[str, Any]) -> None:
        """Settings changed on disk or via save_settings: log in again if needed, then reconnect."""
        self.logger.info("Handling config change")
        previous = self._settings
        self._settings = self.config.get_settings()
        # a token issued for other credentials must not stand in for the new ones
        credentials_changed = _credential_key(previous) != _credential_key(self._settings)
        try:
            if self.login_if_needed(force=credentials_changed):
                return
            self.checker.restart()
        except Exception as e:
            self.logger.error(f"Error handling config change: {e}", exc_info=True)

    def start(self) -> None:
        """Start API server and checker without blocking."""
        try:
            from lmscenter.api.server import run_api_server
            run_api_server(self)
        except Exception as e:
            self.logger.warning(f"API server not started: {e}")

        if not self.login_if_needed():
            self.checker.start()

    def run(self):
        try:
            self.start()
            self._stop_event.wait()
        except KeyboardInterrupt:
            self.logger.info("Interrupted, shutting down")
        finally:
            self.stop()

    def stop(self) -> None:
        self._stop_event.set()
        self.checker.stop()
        self.task_manager.stop()
        self.config.cleanup()


def _credential_key(settings: Optional[LMSConfig]):
    if settings is None or not settings.use_credential_login:
        return None
    return (settings.lms_type, settings.lms_url, settings.username, settings.password)
