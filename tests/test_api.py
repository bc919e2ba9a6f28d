from conftest import auth

LEAVE_BODY = {
    "reason": "Presenting a paper",
    "event_name": "National Robotics Symposium",
    "start_date": "2024-03-01",
    "end_date": "2024-03-03",
    "leave_type": "Academic",
    "document_ref": "sim://invitation-letter",
}


def submit(client, student="stu-1", **overrides):
    return client.post("/api/leave-requests", json={**LEAVE_BODY, **overrides}, headers=auth(student))


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    response = client.get("/api/health", headers={"X-Request-ID": "trace-123"})
    assert response.headers["X-Request-ID"] == "trace-123"


def test_submit_returns_view(client):
    response = submit(client)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    view = body["data"]
    assert view["status"] == "pending"
    assert view["days"] == 3
    assert view["verification"]["confidence"] == 85
    assert view["course_ids"] == ["CS301", "CS302"]
    assert view["reconciliation_pending"] is False


def test_unknown_token_is_unauthorized(client):
    response = client.post("/api/leave-requests", json=LEAVE_BODY, headers=auth("ghost"))
    assert response.status_code == 401


def test_staff_cannot_submit(client):
    response = client.post("/api/leave-requests", json=LEAVE_BODY, headers=auth("tch-1"))
    assert response.status_code == 403


def test_validation_error_envelope(client):
    response = submit(client, start_date="2024-03-05", end_date="2024-03-01")

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["data"]["code"] == "VALIDATION_ERROR"
    assert "End date" in body["message"]


def test_full_review_flow(client):
    request_id = submit(client).json()["data"]["id"]

    queue = client.get("/api/leave-requests", headers=auth("tch-1")).json()["data"]
    assert [r["id"] for r in queue] == [request_id]

    response = client.patch(
        f"/api/leave-requests/{request_id}/decision",
        json={"approved": True, "comments": "Fine"},
        headers=auth("tch-1"),
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "approved_by_teacher"

    hod_queue = client.get("/api/leave-requests", headers=auth("hod-cse")).json()["data"]
    assert [r["id"] for r in hod_queue] == [request_id]

    response = client.patch(
        f"/api/leave-requests/{request_id}/decision",
        json={"approved": True},
        headers=auth("hod-cse"),
    )
    assert response.status_code == 200
    view = response.json()["data"]
    assert view["status"] == "approved_by_hod"
    assert view["reconciliation"]["status"] == "completed"

    mine = client.get("/api/leave-requests", headers=auth("stu-1")).json()["data"]
    assert mine[0]["status"] == "approved_by_hod"


def test_second_decision_is_a_conflict(client):
    request_id = submit(client).json()["data"]["id"]
    body = {"approved": True, "role": "teacher"}
    client.patch(f"/api/leave-requests/{request_id}/decision", json=body, headers=auth("tch-1"))

    response = client.patch(f"/api/leave-requests/{request_id}/decision", json=body, headers=auth("tch-1"))

    assert response.status_code == 409
    assert response.json()["data"]["code"] == "INVALID_STATE"


def test_hod_of_other_department_is_forbidden(client):
    request_id = submit(client).json()["data"]["id"]
    client.patch(f"/api/leave-requests/{request_id}/decision", json={"approved": True}, headers=auth("tch-1"))

    response = client.patch(
        f"/api/leave-requests/{request_id}/decision", json={"approved": True}, headers=auth("hod-ece")
    )

    assert response.status_code == 403
    assert response.json()["data"]["code"] == "AUTHORIZATION_FAILED"


def test_reject_carries_reason(client):
    request_id = submit(client).json()["data"]["id"]

    response = client.post(
        f"/api/leave-requests/{request_id}/reject", json={"reason": "Internal exams"}, headers=auth("tch-1")
    )

    view = response.json()["data"]
    assert view["status"] == "rejected"
    assert view["rejection_reason"] == "Internal exams"


def test_other_students_cannot_read_a_request(client):
    request_id = submit(client).json()["data"]["id"]
    response = client.get(f"/api/leave-requests/{request_id}", headers=auth("stu-3"))
    assert response.status_code == 403


def test_unknown_request_is_404(client):
    response = client.get("/api/leave-requests/missing", headers=auth("tch-1"))
    assert response.status_code == 404
    assert response.json()["data"]["code"] == "NOT_FOUND"


def test_students_cannot_open_review_queues(client):
    response = client.get("/api/leave-requests?queue=teacher", headers=auth("stu-1"))
    assert response.status_code == 422


def test_status_filter(client):
    request_id = submit(client).json()["data"]["id"]
    client.post(f"/api/leave-requests/{request_id}/reject", json={"reason": "No"}, headers=auth("tch-1"))

    rejected = client.get("/api/leave-requests?status=rejected", headers=auth("tch-1")).json()["data"]
    pending = client.get("/api/leave-requests", headers=auth("tch-1")).json()["data"]

    assert [r["id"] for r in rejected] == [request_id]
    assert pending == []


def test_anchor_lookup(client):
    view = submit(client).json()["data"]
    reference = view["audit_anchors"][0]["hash"]

    response = client.get(f"/api/anchors/{reference}", headers=auth("stu-1"))

    assert response.status_code == 200
    entry = response.json()["data"]
    assert entry["reference"] == reference
    assert entry["event"] == "created"
    assert client.get("/api/anchors/nope", headers=auth("stu-1")).status_code == 404


def test_attendance_endpoints(client):
    response = client.post(
        "/api/attendance/CS301/sessions",
        json={"date": "2024-03-01", "present": ["stu-2"], "absent": ["stu-1"]},
        headers=auth("tch-1"),
    )
    assert response.status_code == 200
    assert response.json()["data"]["absent"] == ["stu-1"]

    summary = client.get("/api/attendance/me", headers=auth("stu-1")).json()["data"]
    assert summary == [
        {"course_id": "CS301", "present": 0, "absent": 1, "excused": 0, "total": 1, "percentage": 0.0, "flagged": True}
    ]


def test_marking_someone_elses_course_is_forbidden(client):
    response = client.post(
        "/api/attendance/CS301/sessions", json={"date": "2024-03-01", "present": ["stu-1"]}, headers=auth("tch-2")
    )
    assert response.status_code == 403
