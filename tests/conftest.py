"""Pytest configuration and fixtures for zotero-remote tests.

This file provides:
- make_response / make_config: Model factories with sensible defaults
- PortReservation: Race-free port allocation for the mock server
- MockServer: Subprocess management for tests/integration/mock_server.py
- Fixtures: A running mock server, suite config, set-up clients per dialect
"""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Generator

import pytest

pytest.register_assert_rewrite("zotero_remote.assertions")

from zotero_remote.models import ResponseHandle, SuiteConfig  # noqa: E402

# Project root for subprocess cwd
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

MOCK_ROOT_USERNAME = "root"
MOCK_ROOT_PASSWORD = "rootpass"


def make_response(
    status_code: int = 200,
    headers: dict[str, str | list[str]] | None = None,
    body: str = "",
    method: str = "GET",
    url: str = "http://zotero.test/users/1/items",
) -> ResponseHandle:
    """Create a ResponseHandle for testing parsing and assertions.

    Header names are lowercased and single values wrapped in lists, the way
    the transport delivers them.
    """
    normalized: dict[str, list[str]] = {}
    for name, value in (headers or {}).items():
        normalized[name.lower()] = list(value) if isinstance(value, list) else [value]
    return ResponseHandle(
        method=method,
        url=url,
        status_code=status_code,
        headers=normalized,
        body=body,
    )


def make_config(**overrides: Any) -> SuiteConfig:
    """SuiteConfig with test defaults; keyword arguments override fields."""
    values: dict[str, Any] = {
        "api_url_prefix": "http://zotero.test/",
        "user_id": 1,
        "user_id2": 2,
        "root_username": MOCK_ROOT_USERNAME,
        "root_password": MOCK_ROOT_PASSWORD,
    }
    values.update(overrides)
    return SuiteConfig(**values)


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    find_free_port() has a race window: another process can grab the port
    between when we find it and when our server binds. This class keeps the
    socket open until just before the server starts.

    Usage:
        reservation = PortReservation()
        server = MockServer(reservation)
        server.start()  # calls release() internally, then binds
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port. Safe to call more than once."""
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Manages the mock Zotero server subprocess for integration tests."""

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}/"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
                "--root-username", MOCK_ROOT_USERNAME,
                "--root-password", MOCK_ROOT_PASSWORD,
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the subprocess: SIGTERM, then SIGKILL after 5s. Safe to call twice."""
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    pass  # Unkillable, nothing more we can do
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def mock_server() -> Generator[MockServer, None, None]:
    """Session-scoped mock Zotero server."""
    with MockServer(PortReservation()) as server:
        yield server


@pytest.fixture(scope="session")
def mock_config(mock_server: MockServer) -> SuiteConfig:
    """Suite config pointing at the mock server."""
    return make_config(api_url_prefix=mock_server.base_url, timeout=10.0)


@pytest.fixture(scope="session")
def suite_state(mock_config: SuiteConfig):
    """Run suite setup once per session against the mock server."""
    from zotero_remote.client import ApiClient
    from zotero_remote.suite_setup import run_suite_setup

    with ApiClient(mock_config) as client:
        return run_suite_setup(client)


def _library_helpers(config: SuiteConfig, state, dialect):
    from zotero_remote.client import ApiClient
    from zotero_remote.objects import ObjectHelpers

    client = ApiClient(config, dialect)
    client.use_api_key(state.user1_api_key)
    client.user_clear()
    return ObjectHelpers(client)


@pytest.fixture
def v3_helpers(mock_config: SuiteConfig, suite_state):
    """v3 helpers on user 1's key with an empty user library."""
    from zotero_remote.models import DIALECT_V3

    helpers = _library_helpers(mock_config, suite_state, DIALECT_V3)
    yield helpers
    helpers.client.close()


@pytest.fixture
def v2_helpers(mock_config: SuiteConfig, suite_state):
    """v2 helpers on user 1's key with an empty user library."""
    from zotero_remote.models import DIALECT_V2

    helpers = _library_helpers(mock_config, suite_state, DIALECT_V2)
    yield helpers
    helpers.client.close()


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    Enables running subsets via:
        pytest -m integration  # only mock-server tests
        pytest -m unit         # only unit tests
        pytest -m live         # only real-server tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        elif "live" in test_path.parts:
            item.add_marker(pytest.mark.live)
        else:
            item.add_marker(pytest.mark.unit)
