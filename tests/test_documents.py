import base64
from decimal import Decimal

import pytest
import requests

from procura.documents import DocumentClient, document_context, email_body
from procura.errors import DocumentServiceError
from procura.services import orders as svc
from procura.services.orders import PURCHASE_ORDERS


class FakeResponse:
    def __init__(self, status_code=200, content=b"", payload=None):
        self.status_code = status_code
        self.content = content
        self._payload = payload

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def order(ctx, header, refs, make_line):
    return svc.create_order(
        PURCHASE_ORDERS,
        {**header, "currency": "VES", "exchange_rate": "40"},
        [make_line(refs["material"], quantity=10, unit_price=Decimal("10"), discount_percentage=10,
                   sales_percentage=20)],
    )


def test_document_context(order):
    doc = document_context(order)
    assert doc["totals"].total == Decimal("122.4")
    assert doc["formatted"]["total"] == "Bs. 122.40"
    assert doc["formatted"]["montoIVA"] == "Bs. 14.40"
    assert doc["reference_total"] == Decimal("3.06")
    assert doc["reference_formatted"] == "$ 3.06"


def test_email_body_escapes_user_text(order):
    body = email_body(order, message="<script>alert(1)</script>")
    assert "&lt;script&gt;" in body
    assert "<script>" not in body
    assert "Bs. 122.40" in body
    assert "Condición de pago:</strong> Contado" in body


def test_generate_pdf_posts_order_id():
    session = FakeSession(FakeResponse(content=b"%PDF-1.4"))
    client = DocumentClient("http://docs.test/functions/v1/", api_key="k", timeout=5, session=session)

    assert client.generate_pdf("generate-po-pdf", 7) == b"%PDF-1.4"
    call = session.calls[0]
    assert call["url"] == "http://docs.test/functions/v1/generate-po-pdf"
    assert call["json"] == {"orderId": 7}
    assert call["headers"]["Authorization"] == "Bearer k"
    assert call["timeout"] == 5


def test_error_payload_is_reported():
    session = FakeSession(FakeResponse(status_code=500, payload={"error": "Orden no encontrada"}))
    client = DocumentClient("http://docs.test", session=session)

    with pytest.raises(DocumentServiceError, match="Orden no encontrada"):
        client.generate_pdf("generate-po-pdf", 1)


def test_unreachable_service():
    session = FakeSession(requests.ConnectionError("refused"))
    client = DocumentClient("http://docs.test", session=session)

    with pytest.raises(DocumentServiceError, match="no está disponible"):
        client.generate_pdf("generate-po-pdf", 1)


def test_send_email_attaches_pdf(order):
    session = FakeSession(FakeResponse(content=b"PDF"), FakeResponse(payload={"success": True}))
    client = DocumentClient("http://docs.test", session=session)

    result = client.send_email("generate-po-pdf", order, "ventas@acme.example", message="Hola",
                               whatsapp_phone="+584141234567")

    assert result == {"success": True}
    payload = session.calls[1]["json"]
    assert session.calls[1]["url"] == "http://docs.test/send-email"
    assert payload["to"] == "ventas@acme.example"
    assert payload["attachment"] == base64.b64encode(b"PDF").decode("ascii")
    assert payload["attachmentFilename"] == f"{order.document_number}.pdf"
    assert payload["whatsappPhone"] == "+584141234567"
    assert "Hola" in payload["body"]


def test_send_email_requires_recipient(order):
    client = DocumentClient("http://docs.test", session=FakeSession())
    with pytest.raises(DocumentServiceError):
        client.send_email("generate-po-pdf", order, "")


def test_from_app_reads_config(ctx):
    client = DocumentClient.from_app()
    assert client.base_url == "http://documents.test/functions/v1"
    assert client.api_key == "test-key"
