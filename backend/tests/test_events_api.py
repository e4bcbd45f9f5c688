from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from pipeline_fakes import make_session_factory

from logic_deploy.api import events as events_api
from logic_deploy.db.base import Base
from logic_deploy.db.session import get_db_session
from logic_deploy.main import app
from logic_deploy.models import AuditLog, Deployment, Release
from logic_deploy.services.deployment_log import append_deployment_event


class EventsApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.session_factory = make_session_factory()

        def override_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db_session] = override_db
        self.events_session_patch = patch.object(events_api, "SessionLocal", self.session_factory)
        self.events_session_patch.start()
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.events_session_patch.stop()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _create_deployment(self) -> str:
        release_response = self.client.post(
            "/api/releases",
            json={
                "project_id": "line-1",
                "version_id": "v1",
                "snapshot_id": "snap-1",
                "target_runtimes": ["plc-a"],
            },
        )
        self.assertEqual(release_response.status_code, 200)
        create_response = self.client.post(
            "/api/deployments",
            json={"release_id": release_response.json()["id"], "strategy": "atomic", "actor_id": "engineer-1"},
        )
        self.assertEqual(create_response.status_code, 200)
        return create_response.json()["id"]

    def test_events_timeline_stream_and_schema_are_versioned(self) -> None:
        deployment_id = self._create_deployment()

        timeline_response = self.client.get(f"/api/deployments/{deployment_id}/events")
        self.assertEqual(timeline_response.status_code, 200)
        events = timeline_response.json()
        self.assertGreaterEqual(len(events), 1)
        self.assertEqual(events[0]["event_type"], "deployment_created")
        self.assertEqual(events[0]["status_to"], "queued")
        self.assertEqual(events[0]["schema_version"], 1)
        self.assertEqual(events[0]["payload"]["schema_version"], 1)

        stream_response = self.client.get(
            f"/api/deployments/{deployment_id}/events/stream",
            params={"follow": "false"},
        )
        self.assertEqual(stream_response.status_code, 200)
        self.assertIn("event: deployment_event", stream_response.text)
        self.assertIn('"schema_version": 1', stream_response.text)

        schema_response = self.client.get("/api/events/schema")
        self.assertEqual(schema_response.status_code, 200)
        schema_payload = schema_response.json()
        self.assertEqual(schema_payload["version"], 1)
        self.assertEqual(schema_payload["stream"]["protocol"], "sse")

        with self.session_factory() as db:
            actions = [row.action for row in db.query(AuditLog).order_by(AuditLog.id.asc()).all()]
            self.assertIn("deployment.created", actions)

    def test_timeline_supports_cursor_and_descending_order(self) -> None:
        deployment_id = self._create_deployment()
        self.client.post(f"/api/deployments/{deployment_id}/cancel", json={"actor_id": "engineer-1"})

        events = self.client.get(f"/api/deployments/{deployment_id}/events").json()
        self.assertEqual([item["event_type"] for item in events], ["deployment_created", "status_changed"])

        newest_first = self.client.get(f"/api/deployments/{deployment_id}/events", params={"order": "desc"}).json()
        self.assertEqual(newest_first[0]["status_to"], "cancelled")

        after_first = self.client.get(
            f"/api/deployments/{deployment_id}/events",
            params={"since_id": events[0]["id"]},
        ).json()
        self.assertEqual([item["id"] for item in after_first], [events[1]["id"]])

        stream_response = self.client.get(f"/api/deployments/{deployment_id}/events/stream")
        self.assertEqual(stream_response.text.count("event: deployment_event"), 2)

    def _watched_deployment(self) -> str:
        with self.session_factory() as db:
            release = Release(project_id="line-1", version_id="v1", snapshot_id="snap-1", metadata_json={})
            db.add(release)
            db.flush()
            deployment = Deployment(
                release_id=release.id,
                strategy="atomic",
                status="completed",
                targets=["plc-a"],
                monitor_state={"status": "watching", "samples": 0, "counters": {}},
            )
            db.add(deployment)
            db.flush()
            append_deployment_event(db, deployment_id=deployment.id, event_type="deployment_completed", status_to="completed")
            db.commit()
            return deployment.id

    def test_follow_stream_stays_open_through_the_monitoring_window(self) -> None:
        deployment_id = self._watched_deployment()
        closed: list[bool] = []

        def monitor_rolls_back(_seconds: float) -> None:
            if closed:
                return
            closed.append(True)
            with self.session_factory() as db:
                deployment = db.get(Deployment, deployment_id)
                deployment.monitor_state = {"status": "rolled_back"}
                append_deployment_event(db, deployment_id=deployment_id, event_type="rollback_completed", level="warning")
                db.commit()

        with patch.object(events_api.time, "sleep", side_effect=monitor_rolls_back):
            stream_response = self.client.get(
                f"/api/deployments/{deployment_id}/events/stream",
                params={"poll_interval_seconds": 0.1},
            )

        self.assertEqual(stream_response.status_code, 200)
        self.assertEqual(closed, [True])
        self.assertIn("deployment_completed", stream_response.text)
        self.assertIn("rollback_completed", stream_response.text)

    def test_unknown_deployment_timeline_is_not_found(self) -> None:
        response = self.client.get("/api/deployments/missing/events")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "NOT_FOUND")


if __name__ == "__main__":
    unittest.main()
