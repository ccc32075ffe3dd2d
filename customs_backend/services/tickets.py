"""Ticket lifecycle for declarations: NEW -> PENDING -> CREATED | FAILED.

PENDING is written before the helpdesk is called, so a request that dies
mid-flight leaves the row visibly PENDING. Such a row is never claimed
again automatically; an operator checks the helpdesk and resolves it with
``reconcile``. FAILED can be retried; CREATED never is.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from customs_backend.errors import ConflictError, DeskError, ExternalServiceError
from customs_backend.schemas import TicketStatus
from customs_backend.services.data_layer import DeclarationStore
from customs_backend.services.odoo import Ticketing

logger = structlog.get_logger(__name__)

RECONCILED_WITHOUT_TICKET = "Reset by operator: no helpdesk ticket found"


@dataclass
class TicketOutcome:
    declaration_id: int
    ticket_id: Optional[int]
    status: TicketStatus = TicketStatus.CREATED


def _already_exists(ticket_id: Optional[int]) -> ConflictError:
    return ConflictError(
        f"Ticket already exists: {ticket_id}", code="AlreadyExists", status_code=400
    )


class TicketLifecycle:
    def __init__(self, store: DeclarationStore, ticketing: Ticketing):
        self.store = store
        self.ticketing = ticketing

    def request_ticket(self, declaration_id: int) -> TicketOutcome:
        declaration = self.store.get_by_id(declaration_id)
        if declaration.ticket_status is TicketStatus.CREATED:
            raise _already_exists(declaration.ticket_id)

        if not self.store.claim_for_ticket(declaration_id):
            # lost the race: re-read to report what the other request did
            current = self.store.get_by_id(declaration_id)
            if current.ticket_status is TicketStatus.CREATED:
                raise _already_exists(current.ticket_id)
            raise ConflictError(
                "Ticket creation already in progress", code="TicketInFlight", status_code=409
            )
        logger.info("ticket_pending", declaration_id=declaration_id)

        try:
            ticket_id = self.ticketing.create_ticket(declaration)
        except Exception as exc:
            message = (exc.details if isinstance(exc, DeskError) else str(exc)) or (
                "Unknown ticketing error"
            )
            self.store.update_ticket_status(declaration_id, TicketStatus.FAILED, error=message)
            logger.warning("ticket_failed", declaration_id=declaration_id, error=message)
            raise ExternalServiceError(message) from exc

        try:
            self.store.update_ticket_status(declaration_id, TicketStatus.CREATED, ticket_id=ticket_id)
        except ConflictError:
            # an operator resolved the claim while the helpdesk call was running
            logger.error("ticket_outcome_discarded", declaration_id=declaration_id, ticket_id=ticket_id)
            raise
        logger.info("ticket_created", declaration_id=declaration_id, ticket_id=ticket_id)
        return TicketOutcome(declaration_id=declaration_id, ticket_id=ticket_id)

    def reconcile(self, declaration_id: int, ticket_id: Optional[int] = None) -> TicketOutcome:
        """Resolve a stuck PENDING claim by hand.

        With the helpdesk ticket id found by the operator the row becomes
        CREATED; without one it becomes FAILED and may be requested again.
        """
        if ticket_id is not None:
            self.store.update_ticket_status(declaration_id, TicketStatus.CREATED, ticket_id=ticket_id)
            status = TicketStatus.CREATED
        else:
            self.store.update_ticket_status(
                declaration_id, TicketStatus.FAILED, error=RECONCILED_WITHOUT_TICKET
            )
            status = TicketStatus.FAILED
        logger.info(
            "ticket_reconciled", declaration_id=declaration_id, ticket_id=ticket_id, status=status.value
        )
        return TicketOutcome(declaration_id=declaration_id, ticket_id=ticket_id, status=status)
