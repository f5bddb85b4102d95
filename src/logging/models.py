"""Logging data models: LogLevel, LogComponent, LogEntry."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Log levels with numeric values for severity comparison.

    Uses integer values so that severity comparison works correctly.
    String comparison would fail (e.g., "debug" > "critical" lexicographically).
    """

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @property
    def name_str(self) -> str:
        """Get lowercase name for display/serialization."""
        return self.name.lower()


class LogComponent(Enum):
    """All scheduler components that can produce structured logs."""

    DISPATCHER = "dispatcher"
    LIFECYCLE = "lifecycle"
    WAITER = "waiter"
    EXECUTOR = "executor"
    PUBLISHER = "publisher"
    TRIGGERS = "triggers"

    # Infrastructure
    GENERATION_CLIENT = "generation_client"
    LATE_CLIENT = "late_client"
    DATABASE = "database"
    CONFIG = "config"
    STARTUP = "startup"


@dataclass
class LogEntry:
    """Structured log entry.

    Represents a single log event with schedule context, optional error
    details and timing.  Serializes to JSON (files), dict (Supabase) and a
    one-line console format.
    """

    # Required fields
    timestamp: datetime
    level: LogLevel
    component: LogComponent
    message: str

    # Context
    schedule_id: Optional[str] = None
    owner_id: Optional[str] = None

    # Additional data
    data: Dict[str, Any] = field(default_factory=dict)

    # Error details
    error_type: Optional[str] = None
    error_traceback: Optional[str] = None

    # Performance
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for Supabase insertion."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "component": self.component.value,
            "message": self.message,
            "schedule_id": self.schedule_id,
            "owner_id": self.owner_id,
            "data": self.data,
            "error_type": self.error_type,
            "error_traceback": self.error_traceback,
            "duration_ms": self.duration_ms,
        }

    def to_json(self) -> str:
        """Serialize to JSON string for file logging."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """Human-readable one-line format for console output."""
        time_str = self.timestamp.strftime("%H:%M:%S")
        msg = f"[{self.level.name}] [{time_str}] [{self.component.value}]"
        if self.schedule_id:
            msg += f" [{self.schedule_id[:8]}]"
        msg += f" {self.message}"
        if self.duration_ms:
            msg += f" ({self.duration_ms}ms)"
        return msg
