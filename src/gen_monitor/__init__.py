# Make src/gen_monitor a Python package
from .api import JobApi, JobApiClient
from .config import MonitorSettings, load_settings_toml
from .environment import EnvironmentSignals, QualityAssessment, StaticEnvironmentProbe, assess_environment
from .errors import ErrorKind, MonitorError, ProtocolError, RateLimitedError, TransportError
from .monitor import JobMonitor
from .reconciler import MonitorCallbacks
from .session import MonitoringSession
from .types import Job, JobStatus, ProgressUpdate, Variant

__all__ = [
    "JobMonitor",
    "MonitorCallbacks",
    "MonitoringSession",
    "MonitorSettings",
    "load_settings_toml",
    "JobApi",
    "JobApiClient",
    "EnvironmentSignals",
    "QualityAssessment",
    "StaticEnvironmentProbe",
    "assess_environment",
    "ErrorKind",
    "MonitorError",
    "TransportError",
    "RateLimitedError",
    "ProtocolError",
    "Job",
    "JobStatus",
    "ProgressUpdate",
    "Variant",
]
