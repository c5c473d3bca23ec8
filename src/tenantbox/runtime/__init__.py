"""Container runtime adapter (docker CLI)."""

from tenantbox.runtime._docker import classify_docker_error, run_docker
from tenantbox.runtime.runtime import ContainerRuntime, DockerRuntime, get_runtime

__all__ = [
    "ContainerRuntime",
    "DockerRuntime",
    "classify_docker_error",
    "get_runtime",
    "run_docker",
]
