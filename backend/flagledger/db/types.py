from datetime import datetime, timezone
import uuid


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Stored naive; every timestamp column holds UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)
