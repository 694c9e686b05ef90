from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ApiError(Exception):
    code: str
    message: str
    status: int = 400
    details: Any | None = None

    def to_payload(self, request_id: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error": {"code": self.code, "message": self.message, "details": self.details},
        }
        if request_id:
            payload["request_id"] = request_id
        return payload
