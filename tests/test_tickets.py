from __future__ import annotations

import pytest

from customs_backend.errors import ConflictError, ExternalServiceError, NotFoundError
from customs_backend.schemas import TicketStatus
from customs_backend.services.tickets import TicketLifecycle

from tests.conftest import FakeTicketing, make_record


@pytest.fixture
def helpdesk(store):
    return FakeTicketing(store=store, ticket_id=55)


@pytest.fixture
def lifecycle(store, helpdesk):
    return TicketLifecycle(store, helpdesk)


class TestRequestTicket:
    def test_success_path(self, store, helpdesk, lifecycle):
        store.upsert_batch([make_record(1001, subject="Reference X", body="Destination DE")])

        outcome = lifecycle.request_ticket(1001)

        assert outcome.ticket_id == 55
        assert outcome.status is TicketStatus.CREATED
        assert helpdesk.status_during_call == ["PENDING"]
        row = store.get_by_id(1001)
        assert row.ticket_status is TicketStatus.CREATED
        assert row.ticket_id == 55
        assert row.ticket_error is None

    def test_unknown_declaration(self, lifecycle, helpdesk):
        with pytest.raises(NotFoundError):
            lifecycle.request_ticket(1)
        assert helpdesk.calls == []

    def test_never_creates_twice(self, store, helpdesk, lifecycle):
        store.upsert_batch([make_record(1)])
        lifecycle.request_ticket(1)

        with pytest.raises(ConflictError) as exc:
            lifecycle.request_ticket(1)

        assert exc.value.code == "AlreadyExists"
        assert exc.value.status_code == 400
        assert helpdesk.calls == [1]
        assert store.get_by_id(1).ticket_status is TicketStatus.CREATED

    def test_failure_is_recorded_and_reported(self, store, helpdesk, lifecycle):
        store.upsert_batch([make_record(1)])
        helpdesk.error = RuntimeError("SMTP timeout")

        with pytest.raises(ExternalServiceError) as exc:
            lifecycle.request_ticket(1)

        assert exc.value.details == "SMTP timeout"
        row = store.get_by_id(1)
        assert row.ticket_status is TicketStatus.FAILED
        assert row.ticket_error == "SMTP timeout"
        assert row.ticket_id is None

    def test_failed_declaration_can_be_retried(self, store, helpdesk, lifecycle):
        store.upsert_batch([make_record(1)])
        helpdesk.error = ExternalServiceError("SMTP timeout")
        with pytest.raises(ExternalServiceError):
            lifecycle.request_ticket(1)

        helpdesk.error = None
        outcome = lifecycle.request_ticket(1)

        assert outcome.ticket_id == 55
        assert helpdesk.status_during_call == ["PENDING", "PENDING"]
        row = store.get_by_id(1)
        assert (row.ticket_status, row.ticket_id, row.ticket_error) == (TicketStatus.CREATED, 55, None)

    def test_in_flight_claim_blocks_second_request(self, store, helpdesk, lifecycle):
        store.upsert_batch([make_record(1)])
        assert store.claim_for_ticket(1)

        with pytest.raises(ConflictError) as exc:
            lifecycle.request_ticket(1)

        assert exc.value.code == "TicketInFlight"
        assert exc.value.status_code == 409
        assert helpdesk.calls == []

    def test_crash_after_helpdesk_success_never_creates_twice(self, store, clock, helpdesk, lifecycle):
        store.upsert_batch([make_record(1)])
        # the first request claimed and reached the helpdesk, then died before CREATED was written
        store.claim_for_ticket(1)
        helpdesk.create_ticket(store.get_by_id(1))
        clock.advance(hours=6)

        with pytest.raises(ConflictError) as exc:
            lifecycle.request_ticket(1)

        assert exc.value.code == "TicketInFlight"
        assert helpdesk.calls == [1]
        assert store.get_by_id(1).ticket_status is TicketStatus.PENDING

    def test_outcome_after_manual_resolution_is_rejected(self, store, helpdesk, lifecycle):
        store.upsert_batch([make_record(1)])

        def resolved_meanwhile(declaration):
            lifecycle.reconcile(1, ticket_id=40)
            return 41

        helpdesk.create_ticket = resolved_meanwhile

        with pytest.raises(ConflictError) as exc:
            lifecycle.request_ticket(1)

        assert exc.value.code == "NotPending"
        row = store.get_by_id(1)
        assert (row.ticket_status, row.ticket_id) == (TicketStatus.CREATED, 40)

    def test_ticket_fields_only(self, store, lifecycle):
        store.upsert_batch([make_record(1, subject="s", mrn="25BEH10000018LIDR4")])
        before = store.get_by_id(1)

        lifecycle.request_ticket(1)

        after = store.get_by_id(1)
        assert after.subject == before.subject
        assert after.mrn == before.mrn
        assert after.last_seen_at == before.last_seen_at


class TestReconcile:
    def test_with_found_ticket_marks_created(self, store, helpdesk, lifecycle):
        store.upsert_batch([make_record(1)])
        store.claim_for_ticket(1)

        outcome = lifecycle.reconcile(1, ticket_id=55)

        assert (outcome.status, outcome.ticket_id) == (TicketStatus.CREATED, 55)
        with pytest.raises(ConflictError) as exc:
            lifecycle.request_ticket(1)
        assert exc.value.code == "AlreadyExists"
        assert helpdesk.calls == []

    def test_without_ticket_allows_retry(self, store, helpdesk, lifecycle):
        store.upsert_batch([make_record(1)])
        store.claim_for_ticket(1)

        outcome = lifecycle.reconcile(1)

        assert outcome.status is TicketStatus.FAILED
        assert store.get_by_id(1).ticket_error.startswith("Reset by operator")
        assert lifecycle.request_ticket(1).ticket_id == 55
        assert helpdesk.calls == [1]

    def test_only_pending_rows(self, store, lifecycle):
        store.upsert_batch([make_record(1)])
        with pytest.raises(ConflictError) as exc:
            lifecycle.reconcile(1, ticket_id=55)
        assert exc.value.code == "NotPending"
        assert exc.value.status_code == 409



class TestCreateProjectEndpoint:
    def test_end_to_end(self, client, sync_headers, ticketing):
        items = [{"declarationId": 1001, "linkString": "XXX/AABBCCDDEEFF00112233445566778899/YYY"}]
        assert client.post("/sync/upsert", json={"items": items}, headers=sync_headers).status_code == 200

        listed = client.get("/declarations", params={"status": "NEW"}).json()
        assert [d["declaration_id"] for d in listed["data"]] == [1001]

        response = client.post("/declarations/1001/create-project")
        assert response.status_code == 200
        assert response.json() == {"success": True, "ticketId": 55, "status": "CREATED"}

        record = client.get("/declarations/1001").json()
        assert record["ticket_status"] == "CREATED"
        assert record["ticket_id"] == 55
        assert record["ticket_error"] is None

        again = client.post("/declarations/1001/create-project")
        assert again.status_code == 400
        assert again.json()["error"] == "AlreadyExists"
        assert ticketing.calls == [1001]

    def test_collaborator_failure_then_retry(self, client, sync_headers, ticketing):
        client.post("/sync/upsert", json={"items": [{"declarationId": 7}]}, headers=sync_headers)
        ticketing.error = RuntimeError("SMTP timeout")

        failed = client.post("/declarations/7/create-project")
        assert failed.status_code == 502
        assert failed.json()["details"] == "SMTP timeout"
        record = client.get("/declarations/7").json()
        assert (record["ticket_status"], record["ticket_error"]) == ("FAILED", "SMTP timeout")

        ticketing.error = None
        retried = client.post("/declarations/7/create-project")
        assert retried.status_code == 200
        assert ticketing.status_during_call == ["PENDING", "PENDING"]
        assert client.get("/declarations/7").json()["ticket_status"] == "CREATED"

    def test_unknown_declaration(self, client):
        response = client.post("/declarations/999/create-project")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"


class TestReconcileEndpoint:
    def test_stuck_claim_resolved_with_ticket_id(self, client, app, sync_headers, ticketing):
        client.post("/sync/upsert", json={"items": [{"declarationId": 9}]}, headers=sync_headers)
        app.state.store.claim_for_ticket(9)

        blocked = client.post("/declarations/9/create-project")
        assert blocked.status_code == 409
        assert blocked.json()["error"] == "TicketInFlight"

        resolved = client.post("/declarations/9/reconcile-ticket", json={"ticketId": 77})
        assert resolved.json() == {"success": True, "ticketId": 77, "status": "CREATED"}
        assert client.get("/declarations/9").json()["ticket_id"] == 77
        assert ticketing.calls == []

    def test_stuck_claim_reset_without_body(self, client, app, sync_headers):
        client.post("/sync/upsert", json={"items": [{"declarationId": 9}]}, headers=sync_headers)
        app.state.store.claim_for_ticket(9)

        reset = client.post("/declarations/9/reconcile-ticket")
        assert reset.json()["status"] == "FAILED"
        assert client.post("/declarations/9/create-project").status_code == 200

    def test_new_declaration_is_not_pending(self, client, sync_headers):
        client.post("/sync/upsert", json={"items": [{"declarationId": 9}]}, headers=sync_headers)
        response = client.post("/declarations/9/reconcile-ticket", json={"ticketId": 1})
        assert response.status_code == 409
        assert response.json()["error"] == "NotPending"
