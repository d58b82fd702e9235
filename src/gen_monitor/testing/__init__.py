from .fakes import CallbackRecorder, FakeEventStream, FakeJobApi
from .manual_scheduler import ManualScheduler, ManualTimer

__all__ = [
    "CallbackRecorder",
    "FakeEventStream",
    "FakeJobApi",
    "ManualScheduler",
    "ManualTimer",
]
