"""docker compose command wrapper.

Every operation shells out to ``docker compose -f <file> ...`` from the
compose project's directory, blocks until the command finishes and raises
a :class:`ComposeError` subclass on failure.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ComposeError(Exception):
    """A docker compose command failed."""

    def __init__(self, message: str, stderr: str = ""):
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class ConfigError(ComposeError):
    """The compose project definition could not be read."""


class PullError(ComposeError):
    """Pulling a service's image failed."""


class BuildError(ComposeError):
    """Building one or more services failed."""


class RestartError(ComposeError):
    """Stopping, removing or starting a service failed.

    ``step`` is the sub-step that failed: ``stop``, ``remove`` or ``start``.
    """

    def __init__(self, service: str, step: str, stderr: str = ""):
        self.service = service
        self.step = step
        super().__init__(f"Failed to {step} container '{service}'", stderr)


class ComposeProject:
    """A compose project rooted at a single compose file."""

    def __init__(self, compose_file: str):
        path = Path(compose_file).resolve()
        self.compose_file = path.name
        self.working_dir = path.parent
        self._config: Optional[Dict[str, Any]] = None

    def _run(self, *args: str) -> str:
        """Run ``docker compose -f <file> <args>`` and return its stdout.

        Raises:
            subprocess.CalledProcessError: the command exited non-zero
            OSError: the docker binary could not be executed
        """
        cmd = ['docker', 'compose', '-f', self.compose_file, *args]
        logger.debug(f"Running {' '.join(cmd)} in {self.working_dir}")
        result = subprocess.run(
            cmd,
            cwd=self.working_dir,
            capture_output=True,
            text=True,
            check=True
        )
        return result.stdout

    @staticmethod
    def _stderr(e: Exception) -> str:
        if isinstance(e, subprocess.CalledProcessError):
            return (e.stderr or '').strip()
        return str(e)

    def list_service_names(self) -> List[str]:
        """Return the declared service names in compose file order."""
        try:
            output = self._run('config', '--services')
        except (subprocess.CalledProcessError, OSError) as e:
            raise ConfigError(
                f"Failed to list services in {self.working_dir / self.compose_file}",
                self._stderr(e)
            ) from e

        return [line.strip() for line in output.splitlines() if line.strip()]

    def _load_config(self) -> Dict[str, Any]:
        if self._config is None:
            try:
                output = self._run('config', '--format', 'json')
                self._config = json.loads(output)
            except (subprocess.CalledProcessError, OSError) as e:
                raise ConfigError(
                    f"Failed to read compose config {self.working_dir / self.compose_file}",
                    self._stderr(e)
                ) from e
            except json.JSONDecodeError as e:
                raise ConfigError(f"Could not parse compose config: {e}") from e
        return self._config

    def service_image(self, service: str) -> Optional[str]:
        """Image reference configured for *service*, or None for build-only services."""
        services = self._load_config().get('services') or {}
        return (services.get(service) or {}).get('image')

    def find_running_container(self, service: str) -> Optional[str]:
        """Container id running *service*, or None when it isn't running."""
        try:
            output = self._run('ps', '-q', service)
        except (subprocess.CalledProcessError, OSError) as e:
            raise ComposeError(
                f"Failed to get container ID for '{service}'", self._stderr(e)
            ) from e

        # Replicated services print one id per line; the first is the one we track
        lines = output.split()
        return lines[0] if lines else None

    def pull_latest(self, service: str) -> None:
        try:
            self._run('pull', service)
        except (subprocess.CalledProcessError, OSError) as e:
            raise PullError(f"Failed to pull image for '{service}'", self._stderr(e)) from e

    def recreate(self, service: str) -> None:
        """Stop, remove, then start a fresh container for *service*.

        A failing step leaves the service as that step left it.
        """
        for step, args in (
            ('stop', ('stop', service)),
            ('remove', ('rm', '-f', service)),
            ('start', ('up', '-d', service)),
        ):
            try:
                self._run(*args)
            except (subprocess.CalledProcessError, OSError) as e:
                raise RestartError(service, step, self._stderr(e)) from e

    def build(self, services: List[str]) -> None:
        """Build *services* with ``--pull`` so base images are refreshed too."""
        try:
            self._run('build', '--pull', *services)
        except (subprocess.CalledProcessError, OSError) as e:
            raise BuildError(
                f"Failed to build containers {', '.join(services)}", self._stderr(e)
            ) from e
