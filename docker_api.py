"""Docker Engine API client for image and container inspection.

Talks to the daemon named by ``DOCKER_HOST`` (default: the local
``/var/run/docker.sock`` Unix socket).  Unix sockets are spoken to with
stdlib ``http.client``; TCP endpoints (``tcp://host:2375``) go through
``requests``.  Only the read-only calls needed to compare image digests
are exposed here; container lifecycle is driven through docker compose.
"""

import http.client
import json
import logging
import os
import socket
import urllib.parse
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

# Docker Engine API version, compatible with Docker 20.10+
API_VERSION = "v1.41"
DEFAULT_HOST = "unix:///var/run/docker.sock"
REQUEST_TIMEOUT = 30


class DockerAPIError(Exception):
    """Error from the Docker Engine API.

    ``status`` is the HTTP status, or 0 when the daemon could not be reached.
    """

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error {status}: {message}")


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: int = REQUEST_TIMEOUT):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


def _error_message(raw: str) -> str:
    """Pull the ``message`` field out of an Engine error body if there is one."""
    try:
        err = json.loads(raw)
        return err.get("message", raw)
    except (json.JSONDecodeError, AttributeError):
        return raw


class DockerClient:
    """Client for the Docker Engine API."""

    def __init__(self, host: Optional[str] = None, timeout: int = REQUEST_TIMEOUT):
        if host is None:
            host = os.environ.get("DOCKER_HOST", "") or DEFAULT_HOST
        self.host = host
        self.timeout = timeout
        self._socket_path: Optional[str] = None
        self._base_url: Optional[str] = None
        self._session: Optional[requests.Session] = None

        if host.startswith("unix://"):
            self._socket_path = host[len("unix://"):]
        elif host.startswith("/"):
            self._socket_path = host
        elif host.startswith("tcp://"):
            self._base_url = "http://" + host[len("tcp://"):]
        elif host.startswith(("http://", "https://")):
            self._base_url = host
        else:
            raise ValueError(f"Unsupported DOCKER_HOST '{host}'")

        if self._base_url:
            self._base_url = self._base_url.rstrip("/")
            self._session = requests.Session()

    def close(self) -> None:
        if self._session is not None:
            self._session.close()

    def _request(self, method: str, path: str,
                 query: Optional[Dict[str, str]] = None) -> Any:
        """Send an HTTP request to the Docker Engine API.

        Returns parsed JSON, the raw text for non-JSON bodies (``/_ping``),
        or None for empty responses.
        """
        url = f"/{API_VERSION}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)

        logger.debug(f"{method} {url}")
        if self._session is not None:
            status, raw = self._send_http(method, url)
        else:
            status, raw = self._send_unix(method, url)

        if status >= 400:
            raise DockerAPIError(status, _error_message(raw))

        if status == 204 or not raw:
            return None

        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def _send_unix(self, method: str, url: str):
        # Fresh connection per call
        conn = UnixHTTPConnection(self._socket_path, timeout=self.timeout)
        try:
            conn.request(method, url)
            response = conn.getresponse()
            raw = response.read().decode("utf-8", errors="replace")
            return response.status, raw
        except OSError as e:
            raise DockerAPIError(
                0, f"Cannot connect to the Docker daemon at unix://{self._socket_path}: {e}"
            ) from e
        finally:
            conn.close()

    def _send_http(self, method: str, url: str):
        try:
            response = self._session.request(method, self._base_url + url, timeout=self.timeout)
        except requests.RequestException as e:
            raise DockerAPIError(
                0, f"Cannot connect to the Docker daemon at {self.host}: {e}"
            ) from e
        return response.status_code, response.text

    # ── Daemon ────────────────────────────────────────────────────

    def ping(self) -> bool:
        """Check that the daemon answers (``GET /_ping``)."""
        return self._request("GET", "/_ping") == "OK"

    # ── Image operations ──────────────────────────────────────────

    def list_images(self, reference: str) -> List[Dict[str, Any]]:
        """List images matching a reference filter.

        Returns list of dicts with keys like ``Id``, ``RepoTags``, ``Created``.
        """
        filters = json.dumps({"reference": [reference]})
        result = self._request("GET", "/images/json", query={"filters": filters})
        return result or []

    # ── Container operations ──────────────────────────────────────

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        """Inspect a container (equivalent to ``docker inspect``).

        Returns the full container JSON.
        """
        info = self._request("GET", f"/containers/{container_id}/json")
        if not isinstance(info, dict):
            raise DockerAPIError(0, f"Unexpected inspect response for container {container_id}")
        return info
