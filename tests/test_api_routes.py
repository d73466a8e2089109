from mhealth_core.models import Variable


def _variable(db, label="Water"):
    v = Variable(label=label, unit="glasses")
    db.add(v)
    db.commit()
    return v.id


def test_duplicate_username_rejected(client, auth_headers):
    r = client.post("/users", json={"username": "tester", "password": "other"})
    assert r.status_code == 409
    assert client.post("/users", json={"username": "", "password": "x"}).status_code == 422
    assert client.post("/users", json={"username": "bob", "password": "x"}).status_code == 200


def test_login_rejects_bad_password(client, auth_headers):
    r = client.post("/users/login", json={"username": "tester", "password": "nope"})
    assert r.status_code == 401


def test_routes_require_token(client):
    assert client.get("/routines/").status_code == 401
    assert client.get("/routines/", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_routine_crud(client, auth_headers, db):
    vid = _variable(db)
    r = client.post("/routines/", headers=auth_headers, json={
        "name": "Morning",
        "variables": [{"variable_id": vid, "weekdays": [1, 1, 3], "times": [{"time": "8:00"}], "default_value": 2}],
    })
    assert r.status_code == 200, r.text
    routine = r.json()
    assert routine["variables"][0]["weekdays"] == [1, 3]
    assert routine["variables"][0]["times"] == [{"time": "08:00"}]

    r = client.put(f"/routines/{routine['id']}", headers=auth_headers, json={"is_active": False})
    assert r.json()["is_active"] is False

    r = client.post(f"/routines/{routine['id']}/variables", headers=auth_headers, json={
        "variable_id": vid, "weekdays": [7], "times": [{"time": "21:30"}],
    })
    assert len(r.json()["variables"]) == 2
    rv_id = r.json()["variables"][1]["id"]
    r = client.delete(f"/routines/{routine['id']}/variables/{rv_id}", headers=auth_headers)
    assert len(r.json()["variables"]) == 1

    listed = client.get("/routines/", headers=auth_headers).json()
    assert [x["id"] for x in listed] == [routine["id"]]

    assert client.delete(f"/routines/{routine['id']}", headers=auth_headers).json() == {"status": "deleted"}
    assert client.delete(f"/routines/{routine['id']}", headers=auth_headers).status_code == 404


def test_routine_validation(client, auth_headers, db):
    vid = _variable(db)
    bad_time = {"name": "x", "variables": [{"variable_id": vid, "weekdays": [1], "times": [{"time": "25:00"}]}]}
    assert client.post("/routines/", headers=auth_headers, json=bad_time).status_code == 422
    bad_day = {"name": "x", "variables": [{"variable_id": vid, "weekdays": [0], "times": [{"time": "08:00"}]}]}
    assert client.post("/routines/", headers=auth_headers, json=bad_day).status_code == 422
    unknown_var = {"name": "x", "variables": [{"variable_id": 424242, "weekdays": [1], "times": [{"time": "08:00"}]}]}
    assert client.post("/routines/", headers=auth_headers, json=unknown_var).status_code == 400


def test_manual_logs(client, auth_headers, db):
    vid = _variable(db)
    r = client.post("/logs/", headers=auth_headers, json={"variable_id": vid, "value": 3, "date": "2025-09-08T10:00:00+02:00"})
    assert r.status_code == 200, r.text
    entry = r.json()
    assert entry["value"] == "3"
    assert entry["source"] == "manual"
    assert entry["date"] == "2025-09-08T08:00:00Z"
    listed = client.get("/logs/", headers=auth_headers, params={"variable_id": vid}).json()
    assert [e["id"] for e in listed] == [entry["id"]]


def test_timezone_profile(client, auth_headers):
    r = client.get("/profile/timezone", headers=auth_headers)
    assert r.json() == {"timezone": "Europe/Stockholm", "is_default": True}
    assert client.put("/profile/timezone", headers=auth_headers, json={}).status_code == 400
    assert client.put("/profile/timezone", headers=auth_headers, json={"timezone": "Nowhere/Land"}).status_code == 400
    r = client.put("/profile/timezone", headers=auth_headers, json={"timezone": "America/Chicago"})
    assert r.json() == {"success": True, "timezone": "America/Chicago"}
    assert client.get("/profile/timezone", headers=auth_headers).json()["timezone"] == "America/Chicago"


def test_notification_preferences_and_subscriptions(client, auth_headers):
    prefs = client.get("/notifications/preferences", headers=auth_headers).json()
    assert prefs["routine_reminder_enabled"] is False
    r = client.put("/notifications/preferences", headers=auth_headers, json={
        "routine_reminder_enabled": True, "routine_reminder_minutes": 10, "routine_notification_timing": "after",
    })
    assert r.json() == {"routine_reminder_enabled": True, "routine_reminder_minutes": 10, "routine_notification_timing": "after"}
    bad = client.put("/notifications/preferences", headers=auth_headers, json={"routine_notification_timing": "whenever"})
    assert bad.status_code == 422

    sub = {"endpoint": "https://push.example/1", "keys": {"p256dh": "k", "auth": "a"}}
    first = client.post("/notifications/subscriptions", headers=auth_headers, json=sub).json()
    again = client.post("/notifications/subscriptions", headers=auth_headers, json=sub).json()
    assert first["subscription_id"] == again["subscription_id"]

    r = client.delete("/notifications/subscriptions", headers=auth_headers, params={"endpoint": sub["endpoint"]})
    assert r.json() == {"success": True}
    listed = client.get("/notifications/subscriptions", headers=auth_headers).json()
    assert [s["is_active"] for s in listed] == [False]


def test_variables(client, auth_headers):
    r = client.post("/variables/", headers=auth_headers, json={"label": "Sleep", "unit": "h"})
    assert r.status_code == 200
    assert any(v["label"] == "Sleep" for v in client.get("/variables/", headers=auth_headers).json())


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    body = client.get("/api/health").json()
    assert body["backend"] == "ok"
    assert body["scheduler"] in ("external", "enabled", "running")


def test_reminder_minutes_must_be_positive(client, auth_headers):
    for minutes in (0, -5, 1441):
        r = client.put("/notifications/preferences", headers=auth_headers, json={"routine_reminder_minutes": minutes})
        assert r.status_code == 400
    r = client.put("/notifications/preferences", headers=auth_headers, json={"routine_reminder_minutes": 1})
    assert r.json()["routine_reminder_minutes"] == 1


def test_batch_log(client, auth_headers, db):
    vid = _variable(db)
    routine = client.post("/routines/", headers=auth_headers, json={
        "name": "Evening",
        "variables": [{"variable_id": vid, "weekdays": [1], "times": [{"time": "21:00"}], "default_value": "1"}],
    }).json()
    rv_id = routine["variables"][0]["id"]

    r = client.post("/routines/batch-log", headers=auth_headers, json={"logs": [
        {"routine_variable_id": rv_id, "date": "2025-09-08"},
        {"routine_variable_id": rv_id, "date": "2025-09-08", "time": "22:00"},
        {"routine_variable_id": 999999, "date": "2025-09-08"},
    ]})

    assert r.status_code == 200, r.text
    body = r.json()
    assert (body["created"], body["skipped"], len(body["errors"])) == (1, 1, 1)
    logs = client.get("/logs/", headers=auth_headers, params={"source": "routine"}).json()
    # 21:00 Stockholm (CEST) is 19:00 UTC
    assert [e["date"] for e in logs] == ["2025-09-08T19:00:00Z"]

    bad = client.post("/routines/batch-log", headers=auth_headers, json={"logs": [
        {"routine_variable_id": rv_id, "date": "2025-09-08", "time": "7pm"},
    ]})
    assert bad.status_code == 422


class _RecordingSender:
    def __init__(self):
        self.payloads = []

    def send(self, sub, payload):
        from mhealth_core.push import PushResult
        self.payloads.append(payload)
        return PushResult(sub.id, True)


def test_send_test_notification(client, auth_headers, db):
    from mhealth_api.deps import get_push_sender
    from mhealth_core.models import NotificationHistory

    sender = _RecordingSender()
    client.app.dependency_overrides[get_push_sender] = lambda: sender
    try:
        message = {"title": "Test", "body": "Hello from Modular Health", "url": "/settings"}
        assert client.post("/notifications/send", headers=auth_headers, json=message).status_code == 404

        sub = {"endpoint": "https://push.example/1", "keys": {"p256dh": "k", "auth": "a"}}
        client.post("/notifications/subscriptions", headers=auth_headers, json=sub)
        r = client.post("/notifications/send", headers=auth_headers, json=message)
    finally:
        client.app.dependency_overrides.pop(get_push_sender, None)

    assert r.status_code == 200, r.text
    assert r.json()["results"] == {"total": 1, "successful": 1, "failed": 0}
    assert sender.payloads[0]["data"]["url"] == "/settings"
    history = db.query(NotificationHistory).one()
    assert (history.notification_type, history.routine_id, history.delivery_status) == ("manual", None, "sent")
