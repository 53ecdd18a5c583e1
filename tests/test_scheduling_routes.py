import uuid

import pytest

from krib.auth.security import create_access_token
from krib.services.slot_offers import next_business_days
from krib.services.time_rules import today_in_timezone

from conftest import auth_headers


@pytest.fixture()
def open_days():
    return [d.isoformat() for d in next_business_days(today_in_timezone("America/New_York"))]


def _slots(days, start="09:00", end="12:00"):
    return [{"id": f"slot_{i}", "date": d, "start_time": start, "end_time": end} for i, d in enumerate(days)]


def _offer(client, owner, job, days, **extra):
    body = {"slots": _slots(days)}
    body.update(extra)
    return client.post(f"/scheduling/jobs/{job.id}/offers", headers=auth_headers(owner), json=body)


class TestPickerRoutes:
    def test_business_days(self, client, owner):
        res = client.get("/scheduling/business-days", headers=auth_headers(owner), params={"count": 7})
        assert res.status_code == 200
        days = res.json()["days"]
        assert len(days) == 7
        assert days == sorted(days)

    def test_time_options(self, client, homeowner):
        body = client.get("/scheduling/time-options", headers=auth_headers(homeowner)).json()
        assert body["options"][0]["value"] == "00:00"
        assert body["options"][-1]["value"] == "20:00"
        assert [p["id"] for p in body["presets"]] == ["morning", "afternoon", "evening"]

    def test_quick_fill(self, client, make_job, owner, open_days):
        res = client.get(f"/scheduling/jobs/{make_job().id}/quick-fill", headers=auth_headers(owner))
        assert [s["date"] for s in res.json()["slots"]] == open_days[:3]

    def test_picker_requires_login(self, client):
        assert client.get("/scheduling/time-options").status_code == 401


class TestOfferFlow:
    def test_offer_then_accept(self, client, make_job, owner, homeowner, open_days):
        job = make_job()
        res = _offer(client, owner, job, open_days[:3], message="Any of these work?")
        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "slots_offered"
        assert [s["id"] for s in body["scheduling"]["offeredSlots"]] == ["slot_0", "slot_1", "slot_2"]

        res = client.post(f"/scheduling/jobs/{job.id}/accept", headers=auth_headers(homeowner), json={"slot_id": "slot_1"})
        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "scheduled"
        assert body["scheduled_date"] == open_days[1]
        statuses = {s["id"]: s["status"] for s in body["scheduling"]["offeredSlots"]}
        assert statuses == {"slot_0": "superseded", "slot_1": "accepted", "slot_2": "superseded"}

    def test_more_than_five_slots(self, client, db, make_job, owner, open_days):
        job = make_job()
        res = _offer(client, owner, job, open_days[:6])
        assert res.status_code == 400
        db.refresh(job)
        assert job.status == "pending_schedule"
        assert job.scheduling == {}

    def test_empty_offer_fails_validation(self, client, make_job, owner):
        res = client.post(f"/scheduling/jobs/{make_job().id}/offers", headers=auth_headers(owner), json={"slots": []})
        assert res.status_code == 422

    def test_malformed_time_fails_validation(self, client, make_job, owner, open_days):
        res = client.post(f"/scheduling/jobs/{make_job().id}/offers", headers=auth_headers(owner), json={
            "slots": [{"date": open_days[0], "start_time": "9am", "end_time": "12:00"}],
        })
        assert res.status_code == 422

    def test_only_contractor_offers(self, client, make_job, homeowner, outsider, open_days):
        job = make_job()
        assert _offer(client, homeowner, job, open_days[:1]).status_code == 403
        assert _offer(client, outsider, job, open_days[:1]).status_code == 403

    def test_only_customer_accepts(self, client, make_job, owner, open_days):
        job = make_job()
        _offer(client, owner, job, open_days[:1])
        res = client.post(f"/scheduling/jobs/{job.id}/accept", headers=auth_headers(owner), json={"slot_id": "slot_0"})
        assert res.status_code == 403

    def test_accepting_twice_conflicts(self, client, make_job, owner, homeowner, open_days):
        job = make_job()
        _offer(client, owner, job, open_days[:2])
        headers = auth_headers(homeowner)
        client.post(f"/scheduling/jobs/{job.id}/accept", headers=headers, json={"slot_id": "slot_0"})
        res = client.post(f"/scheduling/jobs/{job.id}/accept", headers=headers, json={"slot_id": "slot_1"})
        assert res.status_code == 409

    def test_unknown_job(self, client, owner, open_days):
        res = client.post(f"/scheduling/jobs/{uuid.uuid4()}/offers", headers=auth_headers(owner), json={
            "slots": _slots(open_days[:1]),
        })
        assert res.status_code == 404


class TestCustomerRequests:
    def test_preferences(self, client, make_job, homeowner):
        job = make_job()
        res = client.post(f"/scheduling/jobs/{job.id}/preferences", headers=auth_headers(homeowner), json={
            "time_of_day": ["Afternoon"], "day_preference": "Weekends", "additional_notes": "Dog in yard",
        })
        assert res.status_code == 200
        record = res.json()["request"]
        assert record["timeOfDay"] == ["Afternoon"]
        assert record["additionalNotes"] == "Dog in yard"

    def test_request_new_times(self, client, make_job, owner, homeowner, open_days):
        job = make_job()
        _offer(client, owner, job, open_days[:1])
        res = client.post(f"/scheduling/jobs/{job.id}/request-new-times", headers=auth_headers(homeowner), json={
            "time_of_day": ["Morning"],
        })
        assert res.status_code == 200
        assert res.json()["scheduling"]["requestedNewTimes"] is True
        assert res.json()["scheduling_requests"][-1]["timeOfDay"] == ["Morning"]

    def test_request_new_times_without_offer(self, client, make_job, homeowner):
        res = client.post(f"/scheduling/jobs/{make_job().id}/request-new-times", headers=auth_headers(homeowner), json={})
        assert res.status_code == 409


class TestExpiry:
    def test_admin_only(self, client, owner):
        assert client.post("/scheduling/offers/expire", headers=auth_headers(owner)).status_code == 403

    def test_admin_runs_expiry(self, client, admin_user):
        res = client.post("/scheduling/offers/expire", headers=auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json() == {"expired": 0}


class TestAppSurface:
    def test_health(self, client):
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json() == {"status": "ok"}

    def test_request_id_is_echoed(self, client):
        res = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        assert client.get("/health").headers["X-Request-ID"]

    def test_metrics_exposed(self, client):
        assert client.get("/metrics").status_code == 200

    def test_invalid_token(self, client):
        res = client.get("/scheduling/time-options", headers={"Authorization": "Bearer nope"})
        assert res.status_code == 401
        assert res.json() == {"detail": "Invalid token"}

    def test_expired_token(self, client, owner):
        token = create_access_token(str(owner.id), ["contractor"], ttl_seconds=-60)
        res = client.get("/scheduling/time-options", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401
        assert res.json() == {"detail": "Token expired"}

    def test_inactive_user_is_rejected(self, client, db, owner):
        owner.is_active = False
        db.commit()
        res = client.get("/scheduling/time-options", headers=auth_headers(owner))
        assert res.status_code == 401
