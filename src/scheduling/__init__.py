"""Scheduling subsystem: schedule lifecycle, triggers, execution and dispatch."""

from src.scheduling.clock import Clock, SystemClock
from src.scheduling.completion_waiter import CompletionWaiter
from src.scheduling.dispatch_loop import DispatchLoop, ScanReport, TickReport
from src.scheduling.executors import (
    ExecutorRegistry,
    GenerationExecutor,
    ImageGenerationExecutor,
    PromptResolver,
    PublishPostExecutor,
    VideoGenerationExecutor,
)
from src.scheduling.models import (
    ActionType,
    ExecutionResult,
    Schedule,
    ScheduleKind,
    ScheduleStatus,
)
from src.scheduling.publish_pipeline import PublishPipeline
from src.scheduling.scheduling_system import SchedulePage, SchedulingSystem
from src.scheduling.store import (
    InMemoryScheduleStore,
    ScheduleStore,
    SupabaseScheduleStore,
)
from src.scheduling.triggers import CalendarTrigger, CronTrigger, TriggerResolver

__all__ = [
    "Clock",
    "SystemClock",
    "CompletionWaiter",
    "DispatchLoop",
    "ScanReport",
    "TickReport",
    "ExecutorRegistry",
    "GenerationExecutor",
    "ImageGenerationExecutor",
    "PromptResolver",
    "PublishPostExecutor",
    "VideoGenerationExecutor",
    "ActionType",
    "ExecutionResult",
    "Schedule",
    "ScheduleKind",
    "ScheduleStatus",
    "PublishPipeline",
    "SchedulePage",
    "SchedulingSystem",
    "InMemoryScheduleStore",
    "ScheduleStore",
    "SupabaseScheduleStore",
    "CalendarTrigger",
    "CronTrigger",
    "TriggerResolver",
]
