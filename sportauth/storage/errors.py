from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or auth-method invariant would be broken."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")



class StorageUnavailable(Exception):
    """Raised when the backing store cannot be reached or written."""


__all__ = ["ConstraintViolation", "StorageUnavailable"]
