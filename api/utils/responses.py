"""
Standard response envelopes
"""
import time
from typing import Any, Optional


def success_response(data: Any = None, message: Optional[str] = None) -> dict:
    response = {
        "success": True,
        "data": data if data is not None else {},
        "timestamp": int(time.time()),
    }
    if message:
        response["message"] = message
    return response
