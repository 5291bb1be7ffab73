import logging
import sys
from datetime import datetime


logger = logging.getLogger('conncheck')

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


class Colors:
    """Terminal colors keyed by message severity"""
    INFO = '\033[0;32m'
    WARN = '\033[1;33m'
    ERROR = '\033[0;31m'
    RESET = '\033[0m'


def setup_logging(config):
    """Send log records to stdout and, when ``config.log_file`` is set, to that file"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


class ConsoleLog:
    """Colored console output mirrored to the module logger.

    ``component`` is the bracketed tag in front of each line: a cluster name
    for per-cluster progress, or a phase name such as ``VALIDATE``.
    """

    def __init__(self, log: logging.Logger = logger):
        self.logger = log

    def _print(self, color: str, message: str, component: str):
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        print(f"{color}[{component}]{Colors.RESET} {timestamp} - {message}")

    def info(self, message: str, component: str = "MAIN"):
        self._print(Colors.INFO, message, component)
        self.logger.info(f"[{component}] {message}")

    def warn(self, message: str, component: str = "MAIN"):
        self._print(Colors.WARN, message, component)
        self.logger.warning(f"[{component}] {message}")

    def error(self, message: str, component: str = "MAIN"):
        self._print(Colors.ERROR, message, component)
        self.logger.error(f"[{component}] {message}")

    def debug(self, message: str, component: str = "MAIN"):
        self.logger.debug(f"[{component}] {message}")
