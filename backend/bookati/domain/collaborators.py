from __future__ import annotations

from typing import Any, Protocol


class InvoicingCollaborator(Protocol):
    async def request_invoice(self, payload: dict[str, Any]) -> str: ...


class NotificationCollaborator(Protocol):
    async def send_ticket(self, payload: dict[str, Any]) -> None: ...


class TicketingCollaborator(Protocol):
    async def render_ticket(self, payload: dict[str, Any]) -> str: ...


class CollaboratorError(Exception):
    """An external collaborator rejected a request or could not be reached."""
