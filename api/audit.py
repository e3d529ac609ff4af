"""
Audit trail for record changes and uploads.

One JSON object per line, written to a size-rotated file. If the file cannot
be opened the entries go to stderr instead of being lost.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from api.errors import truncate_string

AUDIT_LOG_MAX_BYTES = 10 * 1024 * 1024
AUDIT_LOG_BACKUP_COUNT = 5
USER_AGENT_MAX_LENGTH = 500
ERROR_MAX_LENGTH = 500


class AuditAction(str, Enum):
    VIDEO_CREATE = "video_create"
    VIDEO_DELETE = "video_delete"
    THUMBNAIL_UPLOAD = "thumbnail_upload"
    VIDEO_UPLOAD = "video_upload"


def _open_handler(path: Optional[Path]) -> logging.Handler:
    if path is not None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return RotatingFileHandler(
                path, maxBytes=AUDIT_LOG_MAX_BYTES, backupCount=AUDIT_LOG_BACKUP_COUNT, encoding="utf-8"
            )
        except OSError as e:
            logging.getLogger(__name__).warning(f"Cannot open audit log {path}: {e}; writing to stderr")
    return logging.StreamHandler()


class AuditLogger:
    """Writes audit entries through a dedicated, non-propagating logger."""

    def __init__(self, enabled: bool, path: Optional[Path] = None, logger_name: str = "tubely.audit"):
        self.enabled = enabled
        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        # Handlers live on the named logger, so only the first instance attaches one
        if not self.logger.handlers:
            handler = _open_handler(path) if enabled else logging.NullHandler()
            handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(handler)

    def log(
        self,
        action: AuditAction,
        user_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None,
        success: bool = True,
        error: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return

        optional = {
            "request_id": request_id,
            "user_id": user_id,
            "client_ip": client_ip,
            "user_agent": truncate_string(user_agent, USER_AGENT_MAX_LENGTH),
            "details": details or None,
            "error": truncate_string(error, ERROR_MAX_LENGTH),
        }
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action.value,
            "success": success,
            **{key: value for key, value in optional.items() if value},
        }
        if resource_id is not None:
            entry["resource_type"] = "video"
            entry["resource_id"] = resource_id

        try:
            self.logger.info(json.dumps(entry, default=str))
        except (TypeError, ValueError) as e:
            logging.getLogger(__name__).error(f"Failed to write audit entry for {action.value}: {e}")
