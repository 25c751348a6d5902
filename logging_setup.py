import sys
import logging
from logging.handlers import RotatingFileHandler
from pythonjsonlogger import jsonlogger

from settings import settings

# -----------------------------
# Logging Setup
# -----------------------------
def setup_logging():
    log_file = settings.log_file
    max_bytes = 10_000_000  # 10MB
    backup_count = 5

    logger = logging.getLogger()
    logger.setLevel(logging.INFO)

    # Console Handler with human-readable format
    console_handler = logging.StreamHandler(sys.stdout)
    console_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File Handler with JSON format for structured logging
    file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
    log_format = '%(asctime)s %(name)s %(levelname)s %(message)s %(video_id)s %(channel_id)s %(subscription_id)s'
    json_formatter = jsonlogger.JsonFormatter(log_format)
    file_handler.setFormatter(json_formatter)
    logger.addHandler(file_handler)

    return logger


class VideoContextAdapter(logging.LoggerAdapter):
    """Adapter to inject video_id, channel_id and subscription_id into logs"""
    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra.update({
            "video_id": self.extra.get("video_id", "N/A"),
            "channel_id": self.extra.get("channel_id", "N/A"),
            "subscription_id": self.extra.get("subscription_id", "N/A"),
        })
        kwargs["extra"] = extra
        return msg, kwargs
