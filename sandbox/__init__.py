"""Sandbox module for ephemeral remote execution environments.

This module provides the SandboxLifecycleManager and the remote providers
(E2B by default, Docker for local development) it drives.
"""

from sandbox.lifecycle import SandboxLifecycleManager
from sandbox.provider import CommandResult, FileInfo, PreviewServer, SandboxHandle
from sandbox.security import validate_path

__all__ = [
    "CommandResult",
    "FileInfo",
    "PreviewServer",
    "SandboxHandle",
    "SandboxLifecycleManager",
    "build_provider",
    "validate_path",
]


def build_provider(settings):
    """Construct the sandbox provider selected by ``settings.sandbox_provider``."""
    if settings.sandbox_provider == "docker":
        from sandbox.docker_provider import DockerSandboxProvider

        return DockerSandboxProvider(
            image_name=settings.docker_image,
            exposed_ports=(settings.preview_port,),
        )

    from sandbox.e2b_provider import E2BSandboxProvider

    return E2BSandboxProvider(
        api_key=settings.e2b_api_key,
        template=settings.e2b_template,
        timeout_seconds=int(settings.sandbox_ttl_seconds),
        domain=settings.e2b_domain,
    )
