from __future__ import annotations

import json
import logging
import re
import traceback
from collections import Counter, deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

ErrorLevel = Literal["warning", "error", "critical"]
ErrorCategory = Literal[
    "api", "scraping", "browser", "provider_lookup", "database", "validation", "general"
]

DEFAULT_CAPACITY = 1000

_PHONE_SHAPE = re.compile(r"^\+?\d[\d\s\-()]{7,}$")

_LEVEL_TO_LOGGING = {
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class ErrorRecord:
    timestamp: str
    level: str
    category: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def mask_phone(phone: Any) -> str:
    """Show only the last 4 digits of a phone number."""
    digits = re.sub(r"\D", "", str(phone or ""))
    if len(digits) < 4:
        return "****"
    return "******" + digits[-4:]


def sanitize_value(value: Any) -> Any:
    if isinstance(value, str) and _PHONE_SHAPE.match(value.strip()):
        return mask_phone(value)
    return value


def error_details(error: Any) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    if isinstance(error, BaseException):
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__)) \
            if error.__traceback__ is not None else None
        code = getattr(error, "code", None) or getattr(error, "errno", None)
        return {
            "message": str(error) or type(error).__name__,
            "stack": stack,
            "code": str(code) if code is not None else None,
        }
    return {"message": str(error), "stack": None, "code": None}


class ErrorLogger:
    """
    Bounded, structured error sink shared by every component of a process.

    Build one at startup and pass it to each collaborator. Records beyond
    `capacity` evict the oldest first. Each record is mirrored to the stdlib
    logger so it lands in the regular log files too.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._logs: Deque[ErrorRecord] = deque(maxlen=capacity)

    # ---------------- Category helpers ----------------

    def log_api_error(self, endpoint: str, error: Any, context: Optional[Dict[str, Any]] = None) -> None:
        self._add("error", "api", f"API error at endpoint: {endpoint}", error,
                  {"endpoint": endpoint, **(context or {})})

    def log_scraping_error(
        self, town: str, industry: str, error: Any, context: Optional[Dict[str, Any]] = None
    ) -> None:
        self._add("error", "scraping", f"Scraping error in {town} for {industry or 'business search'}", error,
                  {"town": town, "industry": industry, **(context or {})})

    def log_browser_error(self, error: Any, context: Optional[Dict[str, Any]] = None) -> None:
        self._add("critical", "browser", "Browser error", error, dict(context or {}))

    def log_provider_lookup_error(
        self, phone_number: str, error: Any, context: Optional[Dict[str, Any]] = None
    ) -> None:
        masked = mask_phone(phone_number)
        self._add("warning", "provider_lookup", f"Provider lookup failed for {masked}", error,
                  {"phone": masked, **(context or {})})

    def log_database_error(self, operation: str, error: Any, context: Optional[Dict[str, Any]] = None) -> None:
        self._add("critical", "database", f"Database error during {operation}", error,
                  {"operation": operation, **(context or {})})

    def log_validation_error(
        self, field_name: str, value: Any, reason: str, context: Optional[Dict[str, Any]] = None
    ) -> None:
        self._add("warning", "validation", f"Validation error for field: {field_name}", {"message": reason},
                  {"field": field_name, "value": sanitize_value(value), "reason": reason, **(context or {})})

    def log_error(self, message: str, error: Any = None, context: Optional[Dict[str, Any]] = None) -> None:
        self._add("error", "general", message, error, dict(context or {}))

    def log_warning(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self._add("warning", "general", message, None, dict(context or {}))

    # ---------------- Core ----------------

    def _add(self, level: str, category: str, message: str, error: Any, context: Dict[str, Any]) -> None:
        details = error if isinstance(error, dict) else error_details(error)
        rec = ErrorRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            category=category,
            message=message,
            context=context,
            error=details,
        )
        self._logs.append(rec)
        logger.log(
            _LEVEL_TO_LOGGING.get(level, logging.ERROR),
            "[%s] %s%s", category, message,
            f" ({details['message']})" if details and details.get("message") else "",
        )

    # ---------------- Queries ----------------

    def __len__(self) -> int:
        return len(self._logs)

    def get_error_logs(self) -> List[ErrorRecord]:
        return list(self._logs)

    def get_error_logs_by_level(self, level: str) -> List[ErrorRecord]:
        return [r for r in self._logs if r.level == level]

    def get_error_logs_by_category(self, category: str) -> List[ErrorRecord]:
        return [r for r in self._logs if r.category == category]

    def get_error_stats(self) -> Dict[str, Any]:
        logs = list(self._logs)
        return {
            "total_errors": len(logs),
            "errors_by_level": dict(Counter(r.level for r in logs)),
            "errors_by_category": dict(Counter(r.category for r in logs)),
            "recent_errors": logs[-10:],
        }

    def export_error_logs(self) -> str:
        return json.dumps([r.to_dict() for r in self._logs], indent=2, ensure_ascii=False, default=str)

    # ---------------- Lifecycle ----------------

    def clear_logs(self) -> None:
        self._logs.clear()

    def reset(self) -> None:
        """Drop all records. Tests use this between cases when sharing one instance."""
        self._logs = deque(maxlen=self.capacity)
