"""
Integration test configuration and fixtures.

Each test gets a fully wired application on a temporary database. The
application context is built up front so tests can reach the store and
services behind the HTTP layer.
"""
import sqlite3

import bcrypt
import pytest
from fastapi.testclient import TestClient

from app_context import build_context
from main import create_app

TEST_USERNAME = "alice"
TEST_PASSWORD = "s3cret"


@pytest.fixture(scope="session")
def credentials() -> dict:
    """Username, password and the bcrypt hash the server is configured with."""
    return {
        "username": TEST_USERNAME,
        "password": TEST_PASSWORD,
        "password_hash": bcrypt.hashpw(TEST_PASSWORD.encode(), bcrypt.gensalt(rounds=4)).decode(),
    }


@pytest.fixture
def make_client(make_settings):
    """
    Factory for TestClients running the full application.

    Keyword arguments override Settings fields. The lifespan runs on enter,
    so the store is closed again when the test finishes.
    """
    clients = []

    def _make(**overrides) -> TestClient:
        settings = make_settings(**overrides)
        app = create_app(settings, context=build_context(settings))
        client = TestClient(app, raise_server_exceptions=False)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def context(client):
    return client.app.state.context


@pytest.fixture
def age_records(db_path):
    """Push every stored record's storage time back by ``seconds``."""
    def _age(seconds: int) -> None:
        conn = sqlite3.connect(db_path)
        try:
            with conn:
                conn.execute("UPDATE locations SET created_at = created_at - ?", (seconds,))
        finally:
            conn.close()
    return _age
