import logging
import sys
from logging.handlers import RotatingFileHandler
from src.copilot.config import LOGS_DIR


class ColorFormatter(logging.Formatter):
    """A logging formatter that adds color to console output."""

    GREY = "\x1b[38;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    CYAN = "\x1b[36;20m"
    RESET = "\x1b[0m"

    LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s:%(funcName)s:%(lineno)d - %(message)s"
    LEVEL_COLORS = {
        logging.DEBUG: CYAN,
        logging.INFO: GREY,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno, self.GREY)
        formatter = logging.Formatter(f"{color}{self.LOG_FORMAT}{self.RESET}")
        return formatter.format(record)


class LoggingService:
    """
    Configures centralized logging for the copilot pipeline.
    """
    LOG_FILE = "copilot.log"
    _HANDLER_MARKER = "_copilot_handler"

    @staticmethod
    def setup_logging(console_level: int = logging.INFO, log_to_file: bool = True):
        """
        Configures the root logger for file and console output.
        Calling it again does not add duplicate handlers.
        """
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        if any(getattr(handler, LoggingService._HANDLER_MARKER, False) for handler in root_logger.handlers):
            return

        # Create console handler with color formatter
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(ColorFormatter())
        setattr(console_handler, LoggingService._HANDLER_MARKER, True)
        root_logger.addHandler(console_handler)

        if log_to_file:
            # Ensure the log directory exists
            LOGS_DIR.mkdir(exist_ok=True)
            file_handler = RotatingFileHandler(
                LOGS_DIR / LoggingService.LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(ColorFormatter.LOG_FORMAT))
            setattr(file_handler, LoggingService._HANDLER_MARKER, True)
            root_logger.addHandler(file_handler)

        # Streaming fragments are logged at DEBUG; keep HTTP internals quieter.
        logging.getLogger("urllib3").setLevel(logging.WARNING)

        logging.info("Logging service initialized.")
