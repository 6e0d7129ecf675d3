"""Runtime module -- container engine access and agent container lifecycle.

Public API:
    ContainerRunner  - spawn/supervise/classify one agent container run
    DockerEngine     - Docker Engine API client over the unix socket
    ContainerRuntime - protocol the runner needs from an engine
"""

from flotilla.runtime.base import ContainerRuntime, ContainerSpec, ContainerSummary
from flotilla.runtime.docker import DockerEngine, FrameDecoder
from flotilla.runtime.runner import ContainerRunner

__all__ = [
    "ContainerRunner",
    "ContainerRuntime",
    "ContainerSpec",
    "ContainerSummary",
    "DockerEngine",
    "FrameDecoder",
]
