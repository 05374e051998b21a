"""
tests/test_likes.py
"""
from __future__ import annotations

import pytest

from folio.blog import NotFoundError, ValidationError, Viewer, create_post, toggle_like


@pytest.fixture
def published(db) -> str:
    return create_post("Likeable", status="published", db=db)


def test_toggle_like_round_trip(db, published):
    alice = Viewer(id="alice")
    assert toggle_like(published, alice, db=db) == (True, 1)
    assert toggle_like(published, alice, db=db) == (False, 0)


def test_likes_count_distinct_viewers(db, published):
    toggle_like(published, Viewer(id="alice"), db=db)
    assert toggle_like(published, Viewer(id="bob"), db=db) == (True, 2)


@pytest.mark.parametrize("status", ["pending", "rejected"])
def test_unpublished_posts_cannot_be_liked(db, status):
    pid = create_post("Hidden", status=status, db=db)
    with pytest.raises(NotFoundError):
        toggle_like(pid, Viewer(id="alice"), db=db)


def test_missing_post_id(db):
    with pytest.raises(ValidationError, match="Missing postId"):
        toggle_like("", Viewer(id="alice"), db=db)


# ───────────────────────── HTTP ─────────────────────────────────────
def test_like_requires_viewer(client, published):
    rv = client.post(f"/api/posts/{published}/like")
    assert rv.status_code == 401
    assert rv.get_json() == {"error": "Unauthorized"}


def test_like_route(viewer_client, published):
    rv = viewer_client.post(f"/api/posts/{published}/like")
    assert rv.status_code == 200
    assert rv.get_json() == {"liked": True, "likes": 1}

    rv = viewer_client.post(f"/api/posts/{published}/like")
    assert rv.get_json() == {"liked": False, "likes": 0}


def test_like_route_unknown_post(viewer_client):
    rv = viewer_client.post("/api/posts/ghost/like")
    assert rv.status_code == 404
    assert rv.get_json() == {"error": "Not found"}


def test_like_route_without_id(viewer_client):
    rv = viewer_client.post("/api/posts/like")
    assert rv.status_code == 400
    assert rv.get_json() == {"error": "Missing postId"}
