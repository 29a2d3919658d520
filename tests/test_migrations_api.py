from __future__ import annotations

from fastapi.testclient import TestClient

from schemaflow.main import app

USERS_V0 = """
table users {
  id bigint not null primary key
  email text not null unique
}
"""

USERS_WITH_PHONE = """
table users {
  id bigint not null primary key
  email text not null unique
  phone text
}
"""

OPTIONAL_EMAIL = """
table users {
  id bigint not null primary key
  email text unique
}
"""

WITH_LEGACY = USERS_V0 + """
table legacy_logs {
  id bigint not null primary key
  body text
}
"""


def test_health_check() -> None:
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_diff_between_sources(client) -> None:
    response = client.post("/migrations/diff", json={"current": USERS_V0, "desired": USERS_WITH_PHONE})

    assert response.status_code == 200
    (operation,) = response.json()["operations"]
    assert operation["kind"] == "add_column"
    assert operation["description"] == "add column users.phone text"
    assert operation["inverse"] == "drop column users.phone"
    assert operation["tables"] == ["users"]


def test_diff_defaults_to_recorded_history(client) -> None:
    response = client.post("/migrations/diff", json={"desired": USERS_V0})

    assert response.status_code == 200
    assert [op["kind"] for op in response.json()["operations"]] == ["create_table"]


def test_plan_reports_syntax_errors(client) -> None:
    response = client.post("/migrations/plan", json={"source": "table users {\n  id varchar\n}\n"})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["error"] == "syntax"
    assert detail["line"] == 2
    assert detail["result_code"] == 6


def test_plan_reports_semantic_errors(client) -> None:
    response = client.post("/migrations/plan", json={"source": "table users {\n  id integer\n}\n"})

    assert response.status_code == 422
    assert response.json()["detail"]["error"] == "semantic"
    assert response.json()["detail"]["result_code"] == 6


def test_plan_apply_and_status(client, fake_connection) -> None:
    planned = client.post("/migrations/plan", json={"source": USERS_V0})

    assert planned.status_code == 200
    body = planned.json()
    assert body["has_data_loss"] is False
    assert [unit["identifier"] for unit in body["units"]] == ["0001_migration"]
    assert body["operations"][0]["tier"] == "safe"

    applied = client.post("/migrations/apply", json={"source": USERS_V0})

    assert applied.status_code == 200
    assert applied.json() == {"result_code": 0, "result": "success", "applied": ["0001_migration"], "awaiting": None}
    assert fake_connection.executed[0].startswith('CREATE TABLE "users"')

    status = client.get("/migrations/status")

    assert status.status_code == 200
    payload = status.json()
    assert payload["result_code"] == 0
    assert [(r["unit_id"], r["status"]) for r in payload["records"]] == [("0001_migration", "applied")]
    assert payload["blocking"] is None


def test_backfill_flow(client, fake_connection) -> None:
    client.post("/migrations/apply", json={"source": OPTIONAL_EMAIL})
    fake_connection.row_counts["users"] = 10

    applied = client.post("/migrations/apply", json={"source": USERS_V0, "phased": True})

    assert applied.json() == {
        "result_code": 5,
        "result": "awaiting_action",
        "applied": [],
        "awaiting": "0002_migration_backfill_users_email",
    }
    assert client.get("/migrations/status").json()["result_code"] == 5

    rejected = client.post(
        "/migrations/backfills/0002_migration_backfill_users_email/acknowledge",
        json={"remaining_violations": 3},
    )
    assert rejected.status_code == 400
    assert rejected.json()["detail"]["error"] == "backfill_rejected"

    acknowledged = client.post(
        "/migrations/backfills/0002_migration_backfill_users_email/acknowledge",
        json={"note": "ran backfill job"},
    )
    assert acknowledged.status_code == 200
    assert acknowledged.json() == {"unit_id": "0002_migration_backfill_users_email", "status": "applied"}

    finished = client.post("/migrations/apply", json={"source": USERS_V0, "phased": True})

    assert finished.json()["applied"] == ["0003_migration_contract"]
    assert fake_connection.executed[-1] == 'ALTER TABLE "users" ALTER COLUMN "email" SET NOT NULL'


def test_abandoning_a_backfill_blocks(client, fake_connection) -> None:
    client.post("/migrations/apply", json={"source": OPTIONAL_EMAIL})
    fake_connection.row_counts["users"] = 10
    client.post("/migrations/apply", json={"source": USERS_V0, "phased": True})

    abandoned = client.post(
        "/migrations/backfills/0002_migration_backfill_users_email/abandon",
        json={"note": "owner declined"},
    )

    assert abandoned.json()["status"] == "failed"
    status = client.get("/migrations/status").json()
    assert status["result_code"] == 2
    assert status["blocking"]["unit_id"] == "0002_migration_backfill_users_email"


def test_data_loss_requires_confirmation(client, fake_connection) -> None:
    client.post("/migrations/apply", json={"source": WITH_LEGACY})
    executed = list(fake_connection.executed)

    refused = client.post("/migrations/apply", json={"source": USERS_V0})

    assert refused.status_code == 400
    detail = refused.json()["detail"]
    assert detail["reason"] == "confirmation required"
    assert detail["failed_operation"] == "drop table legacy_logs"
    assert detail["result_code"] == 1
    assert fake_connection.executed == executed

    confirmed = client.post("/migrations/apply", json={"source": USERS_V0, "confirm_data_loss": True})

    assert confirmed.status_code == 200
    assert confirmed.json()["applied"] == ["0002_migration"]


def test_failures_block_until_resolved(client, fake_connection) -> None:
    client.post("/migrations/apply", json={"source": USERS_V0})
    fake_connection.fail_on = '"phone"'

    failed = client.post("/migrations/apply", json={"source": USERS_WITH_PHONE})

    assert failed.status_code == 500
    assert failed.json()["detail"]["error"] == "apply_failed"
    assert failed.json()["detail"]["unit_id"] == "0002_migration"

    fake_connection.fail_on = None
    blocked = client.post("/migrations/plan", json={"source": USERS_WITH_PHONE})

    assert blocked.status_code == 409
    assert blocked.json()["detail"]["blocking_unit"] == "0002_migration"
    assert blocked.json()["detail"]["result_code"] == 2

    resolved = client.post("/migrations/failures/0002_migration/resolve", json={"note": "retry"})

    assert resolved.status_code == 200
    assert resolved.json()["resolved"] is True
    assert client.post("/migrations/apply", json={"source": USERS_WITH_PHONE}).json()["applied"] == ["0003_migration"]


def test_drift_check_is_skipped_without_an_introspectable_target(client) -> None:
    response = client.get("/migrations/status")

    assert response.status_code == 200
    assert response.json()["drift"] is None


def test_explicit_drift_acknowledgement_needs_a_sqlalchemy_target(client) -> None:
    response = client.post("/migrations/drift/acknowledge", json={"note": "checked"})

    assert response.status_code == 422
    assert response.json()["detail"]["result_code"] == 6
