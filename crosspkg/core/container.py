"""Container runtime abstraction for Docker/Podman.

Repository queries and package downloads run inside throwaway containers
of the distribution concerned, so the host needs neither apt, dnf nor
pacman.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import ContainerError

logger = logging.getLogger(__name__)


@dataclass
class ContainerRuntime:
    """Detected container runtime."""
    name: str           # 'docker' or 'podman'
    path: str           # /usr/bin/docker
    version: str        # 24.0.1


def detect_runtime(preferred: str = None) -> ContainerRuntime:
    """Detect available container runtime.

    Args:
        preferred: 'docker', 'podman', or None (auto-detect, prefers podman)

    Returns:
        ContainerRuntime with detected info

    Raises:
        ContainerError if no runtime found
    """
    if preferred:
        runtimes = [preferred]
    else:
        # Prefer podman (rootless, daemonless)
        runtimes = ['podman', 'docker']

    for rt in runtimes:
        path = shutil.which(rt)
        if path:
            try:
                result = subprocess.run(
                    [path, '--version'],
                    capture_output=True,
                    text=True,
                    timeout=5
                )
                if result.returncode == 0:
                    # "podman version 4.5.0" or "Docker version 24.0.1, build ..."
                    version = result.stdout.strip().split()[2].rstrip(',')
                else:
                    version = 'unknown'
            except (subprocess.TimeoutExpired, OSError, IndexError):
                version = 'unknown'

            logger.debug(f"Using container runtime {rt} {version} ({path})")
            return ContainerRuntime(name=rt, path=path, version=version)

    raise ContainerError(
        "No container runtime found. Install docker or podman."
    )


class Container:
    """Wrapper for container operations."""

    def __init__(self, runtime: ContainerRuntime):
        self.runtime = runtime
        self.cmd = runtime.path

    def run(
        self,
        image: str,
        command: List[str] = None,
        rm: bool = True,
        volumes: List[Tuple[str, str]] = None,
        platform: str = None,
        network: str = None,
        workdir: str = None,
        env: dict = None,
        timeout: Optional[int] = None,
    ) -> str:
        """Run a container and wait for it.

        Args:
            image: Image name/tag to run
            command: Command to execute in container
            rm: Remove container when it exits
            volumes: List of (host_path, container_path) tuples
            platform: Target platform, e.g. 'linux/arm64'
            network: Network mode ('host', 'bridge', etc.)
            workdir: Working directory in container
            env: Environment variables dict
            timeout: Seconds before the run is abandoned

        Returns:
            stdout of the command

        Raises:
            ContainerError: On non-zero exit or timeout (timed_out set)
        """
        args = [self.cmd, 'run']

        if rm:
            args.append('--rm')
        if platform:
            args.extend(['--platform', platform])
        if network:
            args.extend(['--network', network])
        if workdir:
            args.extend(['-w', workdir])
        if volumes:
            for host_path, container_path in volumes:
                args.extend(['-v', f'{host_path}:{container_path}'])
        if env:
            for key, value in env.items():
                args.extend(['-e', f'{key}={value}'])

        args.append(image)

        if command:
            args.extend(command)

        logger.debug(f"Running: {' '.join(args)}")
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise ContainerError(f"{image}: timed out after {timeout}s", timed_out=True)
        except OSError as e:
            raise ContainerError(f"{image}: cannot start {self.runtime.name}: {e}")

        if result.returncode != 0:
            raise ContainerError(
                f"{image}: container run failed (exit {result.returncode}): "
                f"{result.stderr.strip()[-500:]}"
            )

        return result.stdout

    def run_script(self, image: str, script: str, **kwargs) -> str:
        """Run a bash script inside the image (see run() for kwargs)."""
        return self.run(image, ['bash', '-c', script], **kwargs)
