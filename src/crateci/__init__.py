from .matrix import expand
from .environment import EnvironmentResolver
from .runner import StepRunner, run_matrix
from .release import ChannelPolicy, ReleaseGate
from .cache import CacheManager, CacheStore, cache_key
from .publish import ArtifactPublisher, Credentials
from .model import AxisSet, Job, MatrixRow, Step, Trigger

__all__ = [
    "expand", "EnvironmentResolver", "StepRunner", "run_matrix", "ChannelPolicy", "ReleaseGate",
    "CacheManager", "CacheStore", "cache_key", "ArtifactPublisher", "Credentials",
    "AxisSet", "Job", "MatrixRow", "Step", "Trigger",
]
