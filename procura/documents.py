"""
procura/documents.py

Client for the external document functions (PDF rendering, email/WhatsApp delivery)
and the totals block those documents display.

The functions receive only the order id and recompute the document themselves;
document_context() gives screens and email bodies the same figures through the
shared totals engine.
"""

from __future__ import annotations

import base64
import logging
from typing import Optional

import requests
from flask import current_app
from markupsafe import escape

from .errors import DocumentServiceError
from .totals import format_money, reference_total

log = logging.getLogger(__name__)


def document_context(order, secondary_currency: str = "VES") -> dict:
    """Totals for display: raw engine result, rounded copy, formatted strings, reference total."""
    totals = order.compute_totals()
    reference = reference_total(totals.total, order.currency, order.exchange_rate, secondary_currency)

    return {
        "totals": totals,
        "rounded": totals.rounded(),
        "formatted": {key: format_money(value, order.currency) for key, value in totals.as_dict().items()},
        "reference_total": reference,
        "reference_formatted": format_money(reference, "USD") if reference is not None else None,
    }


def email_body(order, message: str = "", secondary_currency: str = "VES") -> str:
    """HTML body sent along with the PDF."""
    ctx = document_context(order, secondary_currency)
    parts = [
        f"<h2>{escape(order.document_number)}</h2>",
        f"<p><strong>Empresa:</strong> {escape(order.company.name if order.company else '-')}</p>",
        f"<p><strong>Proveedor:</strong> {escape(order.supplier.name if order.supplier else '-')}</p>",
        f"<p><strong>Total:</strong> {escape(ctx['formatted']['total'])}</p>",
    ]
    terms = getattr(order, "payment_terms_label", None)
    if terms:
        parts.append(f"<p><strong>Condición de pago:</strong> {escape(terms)}</p>")
    if ctx["reference_formatted"]:
        parts.append(f"<p><strong>Referencia:</strong> {escape(ctx['reference_formatted'])}</p>")
    if message:
        parts.append(f"<p>{escape(message)}</p>")
    return "\n".join(parts)


class DocumentClient:
    """Thin HTTP client for the serverless document functions."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_app(cls, app=None) -> "DocumentClient":
        app = app or current_app
        return cls(
            base_url=app.config["DOCUMENTS_BASE_URL"],
            api_key=app.config.get("DOCUMENTS_API_KEY", ""),
            timeout=app.config.get("DOCUMENTS_TIMEOUT", 30),
        )

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, function: str, payload: dict) -> requests.Response:
        url = f"{self.base_url}/{function}"
        try:
            response = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("Document function %s unreachable: %s", function, exc)
            raise DocumentServiceError("El servicio de documentos no está disponible.") from exc

        if not response.ok:
            try:
                detail = response.json().get("error")
            except ValueError:
                detail = None
            log.error("Document function %s failed (%s): %s", function, response.status_code, detail)
            raise DocumentServiceError(detail or f"Error del servicio de documentos ({response.status_code}).")

        return response

    def generate_pdf(self, function: str, order_id: int) -> bytes:
        return self._post(function, {"orderId": order_id}).content

    def send_email(
        self,
        function: str,
        order,
        to: str,
        *,
        message: str = "",
        whatsapp_phone: Optional[str] = None,
        secondary_currency: str = "VES",
    ) -> dict:
        """Render the PDF and hand it to the delivery function with the email body."""
        if not to:
            raise DocumentServiceError("Indique el correo del destinatario.")

        pdf = self.generate_pdf(function, order.id)
        payload = {
            "to": to,
            "subject": f"{order.document_number}",
            "body": email_body(order, message, secondary_currency),
            "attachmentFilename": f"{order.document_number}.pdf",
            "attachment": base64.b64encode(pdf).decode("ascii"),
            "orderId": order.id,
        }
        if whatsapp_phone:
            payload["whatsappPhone"] = whatsapp_phone

        response = self._post("send-email", payload)
        log.info("Sent %s to %s", order.document_number, to)
        try:
            return response.json()
        except ValueError:
            return {}
