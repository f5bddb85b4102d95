"""Structured execution logging for the content scheduler."""
from src.logging.models import LogLevel, LogComponent, LogEntry
from src.logging.agent_logger import AgentLogger, init_logger, get_logger
from src.logging.component_logger import ComponentLogger, TimedOperation

__all__ = [
    "LogLevel", "LogComponent", "LogEntry",
    "AgentLogger", "init_logger", "get_logger",
    "ComponentLogger", "TimedOperation",
]
