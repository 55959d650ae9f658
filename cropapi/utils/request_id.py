from datetime import datetime

from fastapi import Request


def new_rid() -> str:
    return datetime.utcnow().strftime("%Y%m%d%H%M%S%f")[:-2]


def ensure_rid(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    if not rid:
        rid = new_rid()
        request.state.request_id = rid
    return rid
