from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..domain.collaborators import CollaboratorError
from ..usecases.outbox import Collaborators
from ..utils.tickets import ticket_details_url

logger = logging.getLogger(__name__)


class _WebhookClient:
    def __init__(self, url: str, *, client: httpx.AsyncClient) -> None:
        self.url = url
        self.client = client

    async def _post(self, payload: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
        try:
            response = await self.client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"{self.url} unreachable: {exc}") from exc
        if response.status_code >= 400:
            logger.error("collaborator rejected request url=%s status=%s body=%s", self.url, response.status_code, response.text[:200])
            raise CollaboratorError(f"{self.url} returned {response.status_code}")
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise CollaboratorError(f"{self.url} returned a non-JSON body") from exc
        return body if isinstance(body, dict) else {}


class HttpInvoicingClient(_WebhookClient):
    async def request_invoice(self, payload: dict[str, Any]) -> str:
        body = await self._post(payload, headers={"Idempotency-Key": str(payload.get("invoice_key", ""))})
        reference = body.get("invoice_reference") or body.get("reference")
        if not reference:
            raise CollaboratorError("invoicing response carried no invoice reference")
        return str(reference)


class HttpNotificationClient(_WebhookClient):
    async def send_ticket(self, payload: dict[str, Any]) -> None:
        await self._post(payload)


class HttpTicketingClient(_WebhookClient):
    async def render_ticket(self, payload: dict[str, Any]) -> str:
        body = await self._post(payload)
        url = body.get("url")
        if not url:
            raise CollaboratorError("ticketing response carried no ticket url")
        return str(url)


class LinkTicketRenderer:
    """Ticket artifact as a plain details link, used when no ticketing service is configured."""

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url

    async def render_ticket(self, payload: dict[str, Any]) -> str:
        try:
            return ticket_details_url(self.base_url, payload["booking_id"])
        except KeyError as exc:
            raise CollaboratorError("ticket payload has no booking_id") from exc


def build_collaborators(settings: Settings, client: httpx.AsyncClient) -> Collaborators:
    ticketing: HttpTicketingClient | LinkTicketRenderer
    if settings.ticketing_webhook_url:
        ticketing = HttpTicketingClient(settings.ticketing_webhook_url, client=client)
    else:
        ticketing = LinkTicketRenderer(settings.ticket_base_url)
    invoicing = (
        HttpInvoicingClient(settings.invoicing_webhook_url, client=client)
        if settings.invoicing_webhook_url
        else None
    )
    notification = (
        HttpNotificationClient(settings.notification_webhook_url, client=client)
        if settings.notification_webhook_url
        else None
    )
    return Collaborators(ticketing=ticketing, invoicing=invoicing, notification=notification)
