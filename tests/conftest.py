"""
tests/conftest.py
"""
from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

from folio.blog import app, get_db, init_db


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test runs.
    The test client talks plain http, so session cookies must not be
    marked Secure.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        SESSION_COOKIE_SECURE=False,
    )
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _empty_tables() -> None:
    """Every test starts from empty tables; the schema stays."""
    with app.app_context():
        get_db().executescript(
            """
            DELETE FROM post_likes;
            DELETE FROM post_tags;
            DELETE FROM posts;
            DELETE FROM tags;
            """
        )


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def db(client):
    """The connection bound to the test's application context."""
    return get_db()


@pytest.fixture
def viewer_client(client):
    """A client whose session already carries a signed-in user."""
    with client.session_transaction() as sess:
        sess["user_id"] = "user-1"
        sess["email"] = "reader@example.com"
    return client
