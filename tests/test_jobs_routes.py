import uuid
from datetime import datetime, timezone

from krib.models.models import AuditLog, Job
from krib.services.schedule_blocks import build_crew_requirements

from conftest import auth_headers


def _vacation(tech, start, end):
    return {
        "id": "timeoff_1", "techId": str(tech.id), "startDate": start, "endDate": end,
        "type": "vacation", "status": "approved", "notes": "Family trip",
    }


def test_create_single_day_job(client, owner, contractor, homeowner):
    res = client.post("/jobs", headers=auth_headers(owner), json={
        "contractor_id": str(contractor.id),
        "title": "Fix leaking faucet",
        "homeowner_user_id": str(homeowner.id),
        "estimated_duration": 90,
        "scheduled_date": "2030-06-03",
        "scheduled_time": "10:00",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["status"] == "scheduled"
    assert body["is_multi_day"] is False
    assert body["schedule_blocks"] == []
    assert body["scheduled_date"] == "2030-06-03"
    assert body["scheduled_time"].startswith("2030-06-03T14:00:00")
    assert body["job_number"].startswith("JOB-")


def test_create_multi_day_job_gets_blocks(client, owner, contractor):
    res = client.post("/jobs", headers=auth_headers(owner), json={
        "contractor_id": str(contractor.id),
        "title": "Re-pipe house",
        "estimated_duration": 1000,
        "crew_size": 3,
        "scheduled_date": "2030-06-07",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["is_multi_day"] is True
    assert [b["date"] for b in body["schedule_blocks"]] == ["2030-06-07", "2030-06-10", "2030-06-11"]
    assert body["crew_requirements"]["required"] == 3
    assert body["crew_requirements"]["source"] == "specified"


def test_create_without_date_is_pending(client, db, owner, contractor):
    res = client.post("/jobs", headers=auth_headers(owner), json={
        "contractor_id": str(contractor.id), "title": "Inspect boiler",
    })
    assert res.status_code == 201
    assert res.json()["status"] == "pending"
    assert res.json()["estimated_duration"] == 60
    assert db.query(AuditLog).filter(AuditLog.action == "CREATE", AuditLog.entity_type == "job").count() == 1


def test_only_the_owner_can_create(client, outsider, contractor):
    res = client.post("/jobs", headers=auth_headers(outsider), json={
        "contractor_id": str(contractor.id), "title": "Sneaky job",
    })
    assert res.status_code == 403
    assert res.json() == {"detail": "Only the contractor can perform this action"}


def test_requires_authentication(client, contractor):
    res = client.post("/jobs", json={"contractor_id": str(contractor.id), "title": "Anonymous"})
    assert res.status_code == 401


def test_creating_with_tech_on_time_off_writes_nothing(client, db, owner, contractor, techs):
    contractor.scheduling = {"timeOff": [_vacation(techs[0], "2030-06-03", "2030-06-05")]}
    db.commit()
    res = client.post("/jobs", headers=auth_headers(owner), json={
        "contractor_id": str(contractor.id),
        "title": "Install dishwasher",
        "scheduled_date": "2030-06-04",
        "assigned_tech_id": str(techs[0].id),
    })
    assert res.status_code == 400
    assert "On vacation: Family trip" in res.json()["detail"]
    assert db.query(Job).count() == 0


class TestGetJob:
    def test_parties_can_view(self, client, make_job, owner, homeowner, tech_user):
        job = make_job()
        for user in (owner, homeowner, tech_user):
            res = client.get(f"/jobs/{job.id}", headers=auth_headers(user))
            assert res.status_code == 200
            assert res.json()["id"] == str(job.id)

    def test_outsider_cannot_view(self, client, make_job, outsider):
        res = client.get(f"/jobs/{make_job().id}", headers=auth_headers(outsider))
        assert res.status_code == 403

    def test_unknown_job(self, client, owner):
        res = client.get(f"/jobs/{uuid.uuid4()}", headers=auth_headers(owner))
        assert res.status_code == 404


class TestAssign:
    def _scheduled(self, make_job, **overrides):
        values = dict(
            status="scheduled",
            scheduled_date="2030-06-03",
            scheduled_time=datetime(2030, 6, 3, 14, 0, tzinfo=timezone.utc),
            scheduled_end_time=datetime(2030, 6, 3, 16, 0, tzinfo=timezone.utc),
        )
        values.update(overrides)
        return make_job(**values)

    def test_assign_crew(self, client, db, make_job, owner, techs):
        job = self._scheduled(make_job)
        res = client.post(f"/jobs/{job.id}/assign", headers=auth_headers(owner), json={
            "assigned_tech_id": str(techs[0].id),
            "assigned_crew_ids": [str(techs[0].id), str(techs[1].id)],
        })
        assert res.status_code == 200
        body = res.json()
        assert body["assigned_tech_id"] == str(techs[0].id)
        assert body["assigned_crew_ids"] == [str(techs[0].id), str(techs[1].id)]
        audit = db.query(AuditLog).filter(AuditLog.action == "ASSIGN").one()
        assert audit.actor_role == "contractor"

    def test_crew_below_minimum(self, client, make_job, owner, techs):
        job = self._scheduled(make_job, crew_requirements=build_crew_requirements(3, 120))
        res = client.post(f"/jobs/{job.id}/assign", headers=auth_headers(owner), json={
            "assigned_crew_ids": [str(techs[0].id)],
        })
        assert res.status_code == 400

    def test_tech_on_time_off(self, client, db, make_job, owner, contractor, techs):
        contractor.scheduling = {"timeOff": [_vacation(techs[1], "2030-06-03", "2030-06-03")]}
        db.commit()
        job = self._scheduled(make_job)
        res = client.post(f"/jobs/{job.id}/assign", headers=auth_headers(owner), json={
            "assigned_tech_id": str(techs[1].id),
        })
        assert res.status_code == 400
        assert "Ben" in res.json()["detail"]

    def test_overlapping_job_conflicts(self, client, make_job, owner, techs):
        self._scheduled(
            make_job,
            assigned_tech_id=techs[1].id,
            scheduled_time=datetime(2030, 6, 3, 13, 0, tzinfo=timezone.utc),
            scheduled_end_time=datetime(2030, 6, 3, 15, 0, tzinfo=timezone.utc),
        )
        job = self._scheduled(make_job)
        res = client.post(f"/jobs/{job.id}/assign", headers=auth_headers(owner), json={
            "assigned_tech_id": str(techs[1].id),
        })
        assert res.status_code == 409

    def test_unknown_technician(self, client, make_job, owner):
        job = self._scheduled(make_job)
        res = client.post(f"/jobs/{job.id}/assign", headers=auth_headers(owner), json={
            "assigned_tech_id": str(uuid.uuid4()),
        })
        assert res.status_code == 404

    def test_empty_assignment(self, client, make_job, owner):
        res = client.post(f"/jobs/{make_job().id}/assign", headers=auth_headers(owner), json={})
        assert res.status_code == 400

    def test_homeowner_cannot_assign(self, client, make_job, homeowner, techs):
        res = client.post(f"/jobs/{make_job().id}/assign", headers=auth_headers(homeowner), json={
            "assigned_tech_id": str(techs[0].id),
        })
        assert res.status_code == 403
