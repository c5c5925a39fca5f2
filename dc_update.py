#!/usr/bin/env python3
"""
docker compose service updater

Pulls the latest image for each service of a docker compose project and
recreates only the containers whose running image differs (by digest)
from the newest locally cached image for the service's reference.
Services are processed one at a time; a failure in one service is
reported and the run moves on to the next.
"""

__version__ = "1.0.0"

import json
import sys
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional
import argparse
import os

import jsonschema

from compose_project import (
    ComposeError, ComposeProject, ConfigError, PullError, RestartError,
)
from docker_api import DockerAPIError, DockerClient


# Constants
DEFAULT_COMPOSE_FILE = "docker-compose.yml"
DEFAULT_LOG_LEVEL = "INFO"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Environment variables that indicate a CI / automation run
CI_ENV_VARS = (
    "CI", "CONTINUOUS_INTEGRATION", "BUILD_NUMBER", "JENKINS_URL",
    "TRAVIS", "CIRCLECI", "GITHUB_ACTIONS", "GITLAB_CI", "BUILDKITE",
)

# Settings file schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "compose_file": {"type": "string", "minLength": 1},
        "services": {
            "type": "array",
            "items": {"type": "string", "minLength": 1}
        },
        "build": {
            "type": "array",
            "items": {"type": "string", "minLength": 1}
        },
        "show_warnings": {"type": "boolean"},
        "non_interactive": {"type": "boolean"},
        "dry_run": {"type": "boolean"},
        "log_level": {"type": "string", "enum": list(LOG_LEVELS)}
    },
    "additionalProperties": False
}


class SettingsError(Exception):
    """The settings file or environment holds an unusable value."""


def strip_digest(image_id: Optional[str]) -> Optional[str]:
    """Canonicalize an image id by dropping its algorithm prefix.

    ``sha256:abc123`` becomes ``abc123``; a bare ``abc123`` is returned
    unchanged.  Empty ids (including a lone ``sha256:``) give None.
    """
    if not image_id:
        return None
    _, sep, digest = image_id.partition(':')
    if not sep:
        return image_id
    return digest or None


@dataclass
class ImageInfo:
    """A locally cached image as listed by the Engine."""
    id: str
    created: int
    repo_tags: List[str]

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ImageInfo":
        return cls(
            id=data.get('Id', ''),
            created=data.get('Created') or 0,
            repo_tags=data.get('RepoTags') or [],
        )


def normalize_reference(image: str) -> str:
    """Add the implicit ``:latest`` tag to a reference with no tag or digest."""
    if '@' in image or ':' in image.rsplit('/', 1)[-1]:
        return image
    return f"{image}:latest"


def select_latest_image(images: Iterable[ImageInfo]) -> Optional[ImageInfo]:
    """Return the most recently created image, or None for an empty list.

    A candidate replaces the current best only when it is strictly newer,
    so on equal timestamps the first one listed is kept.
    """
    latest: Optional[ImageInfo] = None
    for image in images:
        if latest is None or image.created > latest.created:
            latest = image
    return latest


class Freshness(str, Enum):
    """Result of comparing a running container against the latest image."""
    NOT_RUNNING = "not_running"
    UP_TO_DATE = "up_to_date"
    STALE = "stale"


def compare_digests(current: Optional[str], latest: Optional[str]) -> Freshness:
    """STALE only when both digests are known and differ."""
    if current and latest and current != latest:
        return Freshness.STALE
    return Freshness.UP_TO_DATE


@dataclass
class ServiceResult:
    """What happened to one service during a run."""
    service: str
    status: str = "pending"
    container_id: Optional[str] = None
    image: Optional[str] = None
    current_digest: Optional[str] = None
    latest_digest: Optional[str] = None
    latest_unresolved: bool = False
    error: Optional[str] = None


def is_interactive_terminal() -> bool:
    """True when both stdout and stderr are TTYs and no CI variable is set."""
    if not sys.stdout.isatty() or not sys.stderr.isatty():
        return False
    return not any(os.environ.get(var) for var in CI_ENV_VARS)


class StatusReporter:
    """Terminal status sink for updater progress events.

    Interactive mode prints one symbol-prefixed line per event; otherwise
    the same messages go through the logger.
    """

    PROGRESS = 'progress'
    SYMBOLS = {
        PROGRESS: '⏳',
        logging.INFO: '✅',
        logging.WARNING: '⚠️ ',
        logging.ERROR: '❌',
    }

    def __init__(self, interactive: bool = False, show_warnings: bool = False,
                 logger: Optional[logging.Logger] = None,
                 stream=None, err_stream=None):
        self.interactive = interactive
        self.show_warnings = show_warnings
        self.logger = logger or logging.getLogger('dc_update')
        self.stream = stream
        self.err_stream = err_stream

    def _describe(self, event: str, data: Dict[str, Any]):
        service = data.get('service')
        error = data.get('error')
        if event == 'checking':
            return self.PROGRESS, f"Updating {service}"
        if event == 'restarting':
            return self.PROGRESS, f"Updating and restarting {service}"
        if event == 'building':
            return self.PROGRESS, f"Building containers: {', '.join(data['services'])}"
        if event == 'built':
            return logging.INFO, f"Built {', '.join(data['services'])}"
        if event == 'not_running':
            level = logging.WARNING if self.show_warnings else logging.DEBUG
            return level, f"{service} is not running"
        if event == 'up_to_date':
            return logging.INFO, f"{service} is already up to date"
        if event == 'latest_unresolved':
            return logging.WARNING, (
                f"Could not resolve the latest image for {service} "
                f"({data.get('image') or 'no image reference'}); treating it as up to date"
            )
        if event == 'updated':
            return logging.INFO, f"Updated {service}"
        if event == 'would_update':
            return logging.INFO, (
                f"[DRY RUN] Would update {service} "
                f"({(data.get('current_digest') or '')[:12]} -> {(data.get('latest_digest') or '')[:12]})"
            )
        if event == 'restart_failed':
            return logging.ERROR, f"Failed to restart {service}: {error}"
        if event == 'pull_failed':
            return logging.ERROR, f"Failed to pull image for {service}: {error}"
        if event == 'unknown_service':
            return logging.ERROR, f"Service '{service}' does not exist in docker-compose file"
        if event == 'error':
            return logging.ERROR, f"Error updating {service}: {error}"
        return logging.DEBUG, f"{event}: {data}"

    def __call__(self, event: str, data: Dict[str, Any]) -> None:
        level, message = self._describe(event, data)

        if not self.interactive:
            self.logger.log(logging.INFO if level == self.PROGRESS else level, message)
            return

        if level == logging.DEBUG:
            self.logger.debug(message)
            return

        if level == logging.ERROR:
            stream = self.err_stream or sys.stderr
        else:
            stream = self.stream or sys.stdout
        print(f"{self.SYMBOLS[level]} {message}", file=stream, flush=True)


def _setup_logging(level: str) -> logging.Logger:
    """Setup logging configuration."""
    formatter = logging.Formatter(
        '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S %Z'
    )
    for name in ('dc_update', 'compose_project', 'docker_api'):
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, level.upper()))
        logger.propagate = False

        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)

    return logging.getLogger('dc_update')


class DockerComposeUpdater:
    def __init__(self, compose_file: str = DEFAULT_COMPOSE_FILE, dry_run: bool = False,
                 progress_callback: Optional[Callable[[str, Dict[str, Any]], None]] = None):
        """
        Initialize the updater for one compose project.

        Args:
            compose_file: Path to the docker-compose file
            dry_run: If True, detect stale services but don't build or recreate
            progress_callback: Optional function(event_type, data) receiving
                               per-service progress; defaults to a
                               non-interactive StatusReporter

        Raises:
            ConfigError: the compose file does not exist
        """
        path = Path(compose_file)
        if not path.is_file():
            raise ConfigError(f"docker-compose file does not exist: {path}")

        self.compose_file = path
        self.dry_run = dry_run
        self.logger = logging.getLogger('dc_update')
        self.progress_callback = progress_callback or StatusReporter(logger=self.logger)

        self.compose = ComposeProject(str(path))
        self.docker = DockerClient()

    def _emit(self, event: str, **data: Any) -> None:
        self.progress_callback(event, data)

    def check_connection(self) -> None:
        """Fail fast if the Docker daemon isn't answering.

        Raises:
            DockerAPIError: the daemon is unreachable or unhealthy
        """
        if not self.docker.ping():
            raise DockerAPIError(0, f"Docker daemon at {self.docker.host} is not responding")

    def _current_digest(self, container_id: str) -> Optional[str]:
        """Digest of the image the running container was started from."""
        container_info = self.docker.inspect_container(container_id)
        return strip_digest(container_info.get('Image'))

    def _latest_digest(self, image: str) -> Optional[str]:
        """Digest of the most recently created local image tagged exactly *image*."""
        images = [ImageInfo.from_api(i) for i in self.docker.list_images(image)]
        if '@' not in image:
            # The reference filter matches every tag of an untagged repository
            reference = normalize_reference(image)
            images = [i for i in images if reference in i.repo_tags]
        latest = select_latest_image(images)
        if latest is None:
            self.logger.debug(f"No local images match {image}")
            return None
        self.logger.debug(f"Latest local image for {image}: {latest.id} (created {latest.created})")
        return strip_digest(latest.id)

    def _image_reference(self, service: str, container_id: str) -> Optional[str]:
        """The service's configured image, or the container's for build-only services."""
        image = self.compose.service_image(service)
        if image:
            return image
        container_info = self.docker.inspect_container(container_id)
        config = container_info.get('Config')
        if not isinstance(config, dict):
            return None
        return config.get('Image') or None

    def check_service(self, service: str, result: Optional[ServiceResult] = None) -> Freshness:
        """Decide whether *service* is running an outdated image.

        Pulls the service's image first, so this has a side effect on the
        local image cache.  Details are recorded on *result* when given.

        Raises:
            PullError: the pull failed; staleness can't be determined
            ComposeError: docker compose could not be queried
            DockerAPIError: the Engine could not be queried
        """
        if result is None:
            result = ServiceResult(service=service)

        container_id = self.compose.find_running_container(service)
        if not container_id:
            return Freshness.NOT_RUNNING
        result.container_id = container_id

        self.compose.pull_latest(service)

        result.current_digest = self._current_digest(container_id)
        if result.current_digest is None:
            self.logger.warning(f"Container {container_id[:12]} for {service} reports no image id")

        result.image = self._image_reference(service, container_id)
        if result.image:
            result.latest_digest = self._latest_digest(result.image)
        result.latest_unresolved = result.latest_digest is None

        self.logger.debug(
            f"{service}: current={result.current_digest} latest={result.latest_digest}"
        )
        return compare_digests(result.current_digest, result.latest_digest)

    def update_service(self, service: str,
                       known_services: Optional[List[str]] = None) -> ServiceResult:
        """Check one service and recreate it if its image is stale.

        Every per-service failure is reported and recorded on the result;
        nothing is raised, so the caller can move on to the next service.
        """
        result = ServiceResult(service=service)
        self._emit('checking', service=service)

        if known_services is not None and service not in known_services:
            result.status = 'unknown_service'
            result.error = f"Service '{service}' does not exist in docker-compose file"
            self._emit('unknown_service', service=service)
            return result

        try:
            freshness = self.check_service(service, result)
        except PullError as e:
            result.status = 'pull_failed'
            result.error = str(e)
            self._emit('pull_failed', service=service, error=str(e))
            return result
        except (ComposeError, DockerAPIError) as e:
            result.status = 'error'
            result.error = str(e)
            self._emit('error', service=service, error=str(e))
            return result

        if freshness is Freshness.NOT_RUNNING:
            result.status = 'not_running'
            self._emit('not_running', service=service)
            return result

        if freshness is Freshness.UP_TO_DATE:
            if result.latest_unresolved:
                self._emit('latest_unresolved', service=service, image=result.image)
            result.status = 'up_to_date'
            self._emit('up_to_date', service=service)
            return result

        if self.dry_run:
            result.status = 'would_update'
            self._emit('would_update', service=service,
                       current_digest=result.current_digest,
                       latest_digest=result.latest_digest)
            return result

        self._emit('restarting', service=service)
        try:
            self.compose.recreate(service)
        except RestartError as e:
            result.status = 'restart_failed'
            result.error = str(e)
            self._emit('restart_failed', service=service, error=str(e), step=e.step)
            return result

        result.status = 'updated'
        self._emit('updated', service=service,
                   current_digest=result.current_digest,
                   latest_digest=result.latest_digest)
        return result

    def update_services(self, services: List[str],
                        known_services: Optional[List[str]] = None) -> List[ServiceResult]:
        """Process *services* strictly in order, one at a time."""
        results = []
        for service in services:
            results.append(self.update_service(service, known_services))

        updated = [r.service for r in results if r.status == 'updated']
        failed = [r.service for r in results
                  if r.status in ('restart_failed', 'pull_failed', 'unknown_service', 'error')]
        self.logger.info(
            f"Processed {len(results)} service(s): {len(updated)} updated, {len(failed)} failed"
        )
        if failed:
            self.logger.info(f"Failed services: {', '.join(failed)}")
        return results

    def build_services(self, services: List[str]) -> None:
        """Run ``build --pull`` for *services* (no digest comparison).

        Raises:
            BuildError: the build failed
        """
        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would build {', '.join(services)}")
            return
        self._emit('building', services=services)
        self.compose.build(services)
        self._emit('built', services=services)

    def run(self, services: Optional[List[str]] = None,
            build: Optional[List[str]] = None) -> List[ServiceResult]:
        """Build the requested services, then update the given (or all) services.

        Raises:
            ConfigError: the service list could not be read
            BuildError: the build step failed
        """
        if self.dry_run:
            self.logger.info("=== DRY RUN MODE ===")

        known_services = self.compose.list_service_names()
        names = list(services) if services else known_services

        if build:
            self.build_services(build)

        return self.update_services(names, known_services)


def load_settings(path: str) -> Dict[str, Any]:
    """Load and validate a JSON settings file."""
    try:
        with open(path, 'r') as f:
            settings = json.load(f)
    except OSError as e:
        raise SettingsError(f"Could not read settings file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SettingsError(f"Error parsing settings file {path}: {e}") from e

    try:
        jsonschema.validate(settings, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise SettingsError(f"Settings validation failed for {path}: {e.message}") from e

    return settings


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() == 'true'


def _env_compose_file() -> Optional[str]:
    # COMPOSE_FILE may list several files; the first one names the project
    value = os.environ.get('COMPOSE_FILE', '')
    first = value.split(os.pathsep)[0].strip()
    return first or None


def resolve_settings(args: argparse.Namespace) -> Dict[str, Any]:
    """Merge CLI arguments, settings file, environment and defaults (in that order)."""
    config_path = args.config or os.environ.get('DC_UPDATE_CONFIG')
    file_settings = load_settings(config_path) if config_path else {}

    def pick(cli_value, key, fallback):
        if cli_value is not None:
            return cli_value
        if key in file_settings:
            return file_settings[key]
        return fallback

    settings = {
        'compose_file': pick(args.file, 'compose_file',
                             _env_compose_file() or DEFAULT_COMPOSE_FILE),
        'services': pick(args.services or None, 'services', []),
        'build': pick(args.build, 'build', []),
        'show_warnings': pick(args.show_warnings, 'show_warnings', _env_flag('SHOW_WARNINGS')),
        'non_interactive': pick(args.non_interactive, 'non_interactive',
                                _env_flag('NON_INTERACTIVE')),
        'dry_run': pick(args.dry_run, 'dry_run', _env_flag('DRY_RUN')),
        'log_level': pick(args.log_level, 'log_level',
                          os.environ.get('LOG_LEVEL', DEFAULT_LOG_LEVEL)).upper(),
    }

    if settings['log_level'] not in LOG_LEVELS:
        raise SettingsError(
            f"Invalid log level '{settings['log_level']}' (choose from {', '.join(LOG_LEVELS)})"
        )

    return settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='dc-update',
        description='Update docker compose services whose images have changed. '
                    'Only containers with a newer image are restarted.'
    )
    parser.add_argument(
        'services',
        nargs='*',
        metavar='SERVICE',
        help='Services to update (default: all services in the compose file)'
    )
    parser.add_argument(
        '-f', '--file',
        default=None,
        help=f'Path to docker-compose file (env: COMPOSE_FILE, default: {DEFAULT_COMPOSE_FILE})'
    )
    parser.add_argument(
        '-b', '--build',
        action='append',
        default=None,
        metavar='SERVICE',
        help='Service to build before updating. Can be given multiple times'
    )
    parser.add_argument(
        '--show-warnings',
        action='store_true',
        default=None,
        help="Show warnings for services that aren't running (env: SHOW_WARNINGS)"
    )
    parser.add_argument(
        '-n', '--non-interactive',
        action='store_true',
        default=None,
        help='Use plain log lines instead of status symbols (env: NON_INTERACTIVE)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=None,
        help='Report stale services without building or restarting anything (env: DRY_RUN)'
    )
    parser.add_argument(
        '--config',
        default=None,
        help='Path to JSON settings file (env: DC_UPDATE_CONFIG)'
    )
    parser.add_argument(
        '--log-level',
        type=str.upper,
        choices=list(LOG_LEVELS),
        default=None,
        help=f'Logging level (env: LOG_LEVEL, default: {DEFAULT_LOG_LEVEL})'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    return parser


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)

    try:
        settings = resolve_settings(args)
    except SettingsError as e:
        _setup_logging(DEFAULT_LOG_LEVEL).error(str(e))
        sys.exit(1)

    logger = _setup_logging(settings['log_level'])
    reporter = StatusReporter(
        interactive=not settings['non_interactive'] and is_interactive_terminal(),
        show_warnings=settings['show_warnings'],
        logger=logger,
    )

    updater = None
    try:
        updater = DockerComposeUpdater(
            settings['compose_file'],
            dry_run=settings['dry_run'],
            progress_callback=reporter,
        )
        updater.check_connection()
        updater.run(settings['services'], settings['build'])
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting...")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        if updater is not None:
            updater.docker.close()


if __name__ == '__main__':
    main()
