"""Fixtures for API tests: a full application built from test settings."""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from cloudide.api.main import create_app


@pytest.fixture
def app(test_settings: Any) -> FastAPI:
    return create_app(test_settings)


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    """Test client with the lifespan running (registry, sessions and proxy client in app.state)."""
    with TestClient(app) as test_client:
        yield test_client
