# core/logger.py
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


# Create logs directory if it does not exist
logs_dir = os.getenv("LOG_DIR", "logs")
if not os.path.exists(logs_dir):
    os.makedirs(logs_dir)

log_file_path = os.path.join(logs_dir, 'chain_collector.log')

# Configure logging
logger = logging.getLogger("chain_collector")
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

handler = RotatingFileHandler(log_file_path, maxBytes=10000000, backupCount=5)
handler.setFormatter(JSONFormatter())
logger.addHandler(handler)

console = logging.StreamHandler(sys.stderr)
console.setFormatter(logging.Formatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s'))
logger.addHandler(console)


def get_logger(name: str) -> logging.Logger:
    """Child of the application logger, handed to components that take a logger argument."""
    return logger.getChild(name)
