import progress


def _seed_course(db):
    db.add_course("c1", price=100, owner_id=5)
    db.add_chapter("ch-1", "c1", 1, is_free=True)
    db.add_chapter("ch-3", "c1", 3)
    db.add_chapter("ch-draft", "c1", 4, is_published=False)
    db.add_quiz("qz-2", "c1", position=2)


def test_anonymous_timeline_orders_and_gates_items(db, make_client):
    _seed_course(db)
    client = make_client()

    resp = client.get("/api/courses/c1/timeline")
    assert resp.status_code == 200
    data = resp.get_json()
    assert [(it["type"], it["id"]) for it in data["items"]] == [
        ("chapter", "ch-1"), ("quiz", "qz-2"), ("chapter", "ch-3"),
    ]
    assert [(it["allowed"], it["reason"]) for it in data["items"]] == [
        (True, "FREE"), (False, "LOCKED"), (False, "LOCKED"),
    ]
    assert data["items"][1]["action"] == "auth_required"
    assert data["progress"] is None


def test_purchaser_timeline_is_fully_open(db, make_client):
    _seed_course(db)
    db.purchases.add((7, "c1"))
    db.progress[(7, "ch-1")] = True
    client = make_client(user_id=7)

    data = client.get("/api/courses/c1/timeline").get_json()
    assert data["purchased"] is True
    assert all(it["allowed"] for it in data["items"])
    assert data["items"][0]["is_completed"] is True
    assert data["items"][1]["attempts_used"] == 0
    assert data["progress"] == 50.0


def test_unknown_or_unpublished_course_is_not_found(db, make_client):
    db.add_course("hidden", is_published=False)
    client = make_client(user_id=7)
    assert client.get("/api/courses/hidden/timeline").status_code == 404
    assert client.get("/api/courses/nope/timeline").get_json()["error"] == "not_found"


def test_chapter_view_returns_typed_neighbours(db, make_client):
    _seed_course(db)
    client = make_client()

    data = client.get("/api/courses/c1/chapters/ch-1").get_json()
    assert data["ok"] is True
    assert data["reason"] == "FREE"
    assert data["previous"] is None
    assert data["next"]["type"] == "quiz" and data["next"]["id"] == "qz-2"


def test_locked_chapter_routes_to_sign_in_or_purchase(db, make_client):
    _seed_course(db)

    anon = make_client().get("/api/courses/c1/chapters/ch-3")
    assert anon.status_code == 401
    assert anon.get_json()["action"] == "auth_required"

    learner = make_client(user_id=7).get("/api/courses/c1/chapters/ch-3")
    assert learner.status_code == 403
    assert learner.get_json()["action"] == "purchase_required"

    owner = make_client(user_id=5).get("/api/courses/c1/chapters/ch-3")
    assert owner.status_code == 200
    assert owner.get_json()["previous"]["id"] == "qz-2"


def test_unpublished_chapter_is_not_found_even_for_owner(db, make_client):
    _seed_course(db)
    resp = make_client(user_id=5).get("/api/courses/c1/chapters/ch-draft")
    assert resp.status_code == 404


def test_mark_completed_twice_leaves_one_record(db, make_client):
    _seed_course(db)
    db.purchases.add((7, "c1"))
    client = make_client(user_id=7)

    first = client.put("/api/courses/c1/chapters/ch-3/progress").get_json()
    second = client.put("/api/courses/c1/chapters/ch-3/progress").get_json()

    assert first["is_completed"] is True
    assert second["course_progress"] == first["course_progress"] == 50.0
    assert [k for k in db.progress if k[0] == 7] == [(7, "ch-3")]


def test_mark_incomplete_is_idempotent(db, make_client):
    _seed_course(db)
    db.purchases.add((7, "c1"))
    db.progress[(7, "ch-3")] = True
    client = make_client(user_id=7)

    for _ in range(2):
        resp = client.delete("/api/courses/c1/chapters/ch-3/progress")
        assert resp.status_code == 200
        assert resp.get_json()["is_completed"] is False
    assert (7, "ch-3") not in db.progress


def test_progress_requires_sign_in_and_access(db, make_client):
    _seed_course(db)
    assert make_client().put("/api/courses/c1/chapters/ch-1/progress").status_code == 401
    assert make_client(user_id=7).put("/api/courses/c1/chapters/ch-3/progress").status_code == 403
    # free chapters can be completed without buying the course
    assert make_client(user_id=7).put("/api/courses/c1/chapters/ch-1/progress").status_code == 200


def test_video_end_completes_once(db, make_client):
    _seed_course(db)
    db.purchases.add((7, "c1"))
    client = make_client(user_id=7)

    client.put("/api/courses/c1/chapters/ch-1/progress")
    writes_before = len(db.executed)
    resp = client.post("/api/courses/c1/chapters/ch-1/progress/video-ended")
    assert resp.get_json()["is_completed"] is True
    assert len(db.executed) == writes_before

    resp = client.post("/api/courses/c1/chapters/ch-3/progress/video-ended")
    assert resp.get_json()["course_progress"] == 100.0


def test_course_progress_endpoint(db, make_client):
    _seed_course(db)
    db.progress[(7, "ch-3")] = True
    db.progress[(7, "ch-draft")] = True

    data = make_client(user_id=7).get("/api/courses/c1/progress").get_json()
    assert data["progress"] == 50.0
    assert data["completed_chapters"] == ["ch-3"]
    assert data["total_chapters"] == 2


def test_course_without_published_chapters_reports_zero(db):
    db.add_course("empty")
    assert progress.course_progress(db.deps(), 7, []) == 0.0
    assert progress.progress_percent(0, 0) == 0.0


def test_progress_percent_never_exceeds_hundred():
    assert progress.progress_percent(3, 3) == 100.0
    assert progress.progress_percent(1, 3) == 33.33
