"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import requests


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    status_code: int = 200
    content: bytes = b""


@dataclass
class FakeSession:
    """Record GET requests and answer them from a URL table."""

    routes: Mapping[str, FakeResponse | Exception] = field(default_factory=dict)
    calls: list[dict[str, object]] = field(default_factory=list)

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        """Return (or raise) the configured answer for *url*."""
        self.calls.append({"url": url, **kwargs})
        answer = self.routes.get(url)
        if answer is None:
            return FakeResponse(status_code=404)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def fake_session() -> Callable[..., FakeSession]:
    """Return a factory building :class:`FakeSession` objects."""

    def factory(routes: Mapping[str, FakeResponse | Exception]) -> FakeSession:
        return FakeSession(routes=dict(routes))

    return factory


@pytest.fixture
def connection_error() -> requests.ConnectionError:
    """Return a transport-level failure as raised by requests."""
    return requests.ConnectionError("Name or service not known")


@pytest.fixture
def write_file() -> Callable[[Path, bytes], Path]:
    """Return a helper writing bytes to a path (creating parents)."""

    def _write(path: Path, data: bytes) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    return _write
