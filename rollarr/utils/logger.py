import logging
import os
from pathlib import Path

# Log directory (mounted volume in the container, ./logs when run locally)
LOGS_DIR = Path(os.getenv("ROLLARR_LOG_DIR", "logs"))

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class LineRotatingFileHandler(logging.FileHandler):
    """
    Keeps the log file at max_lines lines.

    When full, rollarr.log becomes rollarr.log.1, .1 becomes .2 and so on;
    anything beyond backup_count is deleted.
    """

    def __init__(self, filename, max_lines=500, backup_count=5, encoding="utf-8"):
        super().__init__(filename, mode='a', encoding=encoding)
        self.max_lines = max_lines
        self.backup_count = backup_count
        self.line_count = self._existing_lines()

    def _existing_lines(self) -> int:
        path = Path(self.baseFilename)
        if not path.exists():
            return 0
        with path.open('r', encoding=self.encoding, errors='replace') as f:
            return sum(1 for _ in f)

    def _backup(self, index: int) -> Path:
        return Path(f"{self.baseFilename}.{index}")

    def emit(self, record):
        super().emit(record)
        self.line_count += 1
        if self.line_count >= self.max_lines:
            self.rotate()

    def rotate(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        oldest = self._backup(self.backup_count)
        if oldest.exists():
            oldest.unlink()
        for index in range(self.backup_count - 1, 0, -1):
            src = self._backup(index)
            if src.exists():
                src.replace(self._backup(index + 1))

        current = Path(self.baseFilename)
        if current.exists():
            current.replace(self._backup(1))

        self.line_count = 0
        self.stream = self._open()


# Global logger reference
_logger = None
_handlers = []


def _file_handler(log_dir: Path, formatter: logging.Formatter):
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = LineRotatingFileHandler(log_dir / "rollarr.log", max_lines=500, backup_count=5)
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_level: str = "INFO", log_dir: Path = None):
    """
    Log to the console and to a line-rotated file in log_dir

    Calling it again replaces the handlers from the previous call.
    """
    global _logger, _handlers

    _logger = logging.getLogger()
    _logger.setLevel(log_level)
    for handler in _handlers:
        _logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    _handlers = [console]

    target = Path(log_dir) if log_dir else LOGS_DIR
    try:
        _handlers.append(_file_handler(target, formatter))
        log_file = target / "rollarr.log"
    except OSError as e:
        log_file = None
        _logger.warning(f"File logging disabled: {e}")

    for handler in _handlers:
        handler.setLevel(log_level)
        _logger.addHandler(handler)

    _logger.info(f"✓ Logging initialized - Level: {log_level}, File: {log_file}")


def change_log_level_runtime(new_level: str) -> bool:
    """Apply a new level to the root logger and every handler setup_logging installed"""
    if not _logger:
        return False

    level = new_level.upper()
    try:
        _logger.setLevel(level)
    except (ValueError, TypeError) as e:
        _logger.error(f"Invalid log level '{new_level}': {e}")
        return False

    for handler in _handlers:
        handler.setLevel(level)
    _logger.info(f"Log level changed to {level}")
    return True
