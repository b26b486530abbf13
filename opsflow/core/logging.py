import logging
import json
from datetime import datetime, timezone
from opsflow.core.middleware import get_current_tenant_id, get_current_request_id, get_current_user_id

class JSONContextFormatter(logging.Formatter):
    def format(self, record):
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "name": record.name,
            "filename": record.filename,
            "tenant_id": get_current_tenant_id() or "system",
            "request_id": get_current_request_id() or "-",
            "user_id": get_current_user_id() or "-",
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)

def setup_logging(level: int = logging.INFO):
    handler = logging.StreamHandler()
    handler.setFormatter(JSONContextFormatter())

    root_logger = logging.getLogger("opsflow")
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Disable uvicorn default to prevent duplicates
    logging.getLogger("uvicorn.access").handlers = [handler]
