"""Shared fixtures for dc_update tests."""

import pytest
from unittest.mock import Mock

from dc_update import DockerComposeUpdater


def api_image(digest: str, created: int, repo_tag: str = None):
    """An entry shaped like the Engine's GET /images/json response.

    Without *repo_tag* the runtime fixture tags it with the reference it is
    listed under.
    """
    return {
        "Id": f"sha256:{digest}",
        "Created": created,
        "RepoTags": [repo_tag] if repo_tag else None,
    }


@pytest.fixture
def compose_file(tmp_path):
    """A compose file on disk (contents are never parsed by the tests)."""
    path = tmp_path / "docker-compose.yml"
    path.write_text(
        "services:\n"
        "  web:\n"
        "    image: nginx:latest\n"
        "  db:\n"
        "    image: postgres:16\n"
    )
    return path


@pytest.fixture
def events():
    """Collected (event, data) pairs emitted by the updater."""
    return []


@pytest.fixture
def updater(compose_file, events, monkeypatch):
    """DockerComposeUpdater with compose and Engine collaborators mocked out."""
    monkeypatch.delenv("DOCKER_HOST", raising=False)
    u = DockerComposeUpdater(
        str(compose_file),
        progress_callback=lambda event, data: events.append((event, data)),
    )
    u.compose = Mock()
    u.docker = Mock()
    return u


@pytest.fixture
def runtime(updater):
    """Wire the mocked collaborators to a small in-memory container runtime.

    Args to the returned function:
        services: declared service names
        running: service -> container id (missing means not running)
        digests: container id -> image id the container runs
        images: image reference -> list of /images/json entries
        service_images: service -> configured image (default '<service>:latest')
    """
    def configure(services=(), running=None, digests=None, images=None,
                  service_images=None):
        running = running or {}
        digests = digests or {}
        images = images or {}
        service_images = service_images or {}

        updater.compose.list_service_names.return_value = list(services)
        updater.compose.find_running_container.side_effect = lambda s: running.get(s)
        updater.compose.service_image.side_effect = (
            lambda s: service_images.get(s, f"{s}:latest")
        )
        updater.docker.inspect_container.side_effect = lambda cid: {
            "Id": cid,
            "Image": digests.get(cid, ""),
            "Config": {"Image": "fallback/image:latest"},
        }
        updater.docker.list_images.side_effect = lambda ref: [
            dict(entry, RepoTags=entry["RepoTags"] or [ref])
            for entry in images.get(ref, [])
        ]
        return updater

    return configure
