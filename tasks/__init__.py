from .base import BaseTask, Task
from .echo import EchoTask
from .sleep import SleepTask
from .command import CommandTask
from .registry import TaskRegistry, UnknownTaskKindError, default_registry

__all__ = [
    "Task", "BaseTask", "EchoTask", "SleepTask", "CommandTask",
    "TaskRegistry", "UnknownTaskKindError", "default_registry",
]
