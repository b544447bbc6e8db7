"""Consumer invoice (NFC-e) emission client.

The fiscal API is an external service. When no endpoint is configured the
client authorizes invoices locally so the rest of the workflow can be
exercised; with ``ApiUrl``/``ApiToken`` set it posts the payload over HTTP.
A failed emission never raises: it comes back as an unsuccessful
:class:`InvoiceResponse` and the sale stays pending for a manual retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, Optional, Sequence

import requests

from . import log
from .constants import (
    SEFAZ_OTHER_PAYMENT_CODE,
    SEFAZ_PAYMENT_CODES,
    WALK_IN_CUSTOMER_LABEL,
    WHOLESALE_CUSTOMER_LABEL,
    PaymentMethod,
)
from .data_manager import SaleItemRow, SaleRow


GENERIC_NCM = "22011000"
CFOP_SALE = "5102"
SIMULATED_URL = "https://www.sefaz.rs.gov.br/ASP/AAE_ROOT/NFE/SAT-WEB-NFE-COM_2.asp?chave={key}"


@dataclass(frozen=True)
class InvoiceResponse:
    success: bool
    message: str
    invoice_key: Optional[str] = None
    invoice_url: Optional[str] = None


def payment_code(method: str) -> str:
    """Map a stored payment method to its SEFAZ code, ``99`` when unknown."""

    try:
        return SEFAZ_PAYMENT_CODES[PaymentMethod(method)]
    except ValueError:
        return SEFAZ_OTHER_PAYMENT_CODE


def build_nfce_payload(
    sale: SaleRow,
    items: Sequence[SaleItemRow],
    document: Optional[str] = None,
    *,
    issued_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build the JSON body expected by the fiscal API for one sale."""

    issued_at = issued_at if issued_at is not None else datetime.now(UTC)
    anonymous = sale.customer_name in (WALK_IN_CUSTOMER_LABEL, WHOLESALE_CUSTOMER_LABEL)
    return {
        "natureza_operacao": "Venda de Mercadoria",
        "data_emissao": issued_at.isoformat(),
        "tipo_documento": "NFCe",
        "finalidade": "Normal",
        "cliente": {
            "cpf": document or sale.customer_document or None,
            "nome": None if anonymous else sale.customer_name,
        },
        "itens": [
            {
                "numero_item": index,
                "codigo_produto": item.product_id,
                "descricao": item.product_name,
                "quantidade": item.quantity,
                "valor_unitario": float(item.price_at_sale),
                "valor_total": float(item.price_at_sale * item.quantity),
                "ncm": GENERIC_NCM,
                "cfop": CFOP_SALE,
            }
            for index, item in enumerate(items, start=1)
        ],
        "pagamento": {
            "forma_pagamento": payment_code(sale.payment_method),
            "valor": float(sale.total),
        },
        "valor_total": float(sale.total),
    }


def simulated_invoice_key(sale_id: str, *, year: int) -> str:
    """Build a 44-digit access key from the sale id for offline authorization."""

    digits = "".join(ch for ch in sale_id if ch.isdigit())
    return f"35{year:04d}{digits[-38:].rjust(38, '0')}"


class InvoiceService:
    """Client for the fiscal invoice API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        token: Optional[str] = None,
        *,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/") if api_url else None
        self.token = token
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    @property
    def simulated(self) -> bool:
        return not (self.api_url and self.token)

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    def emit_nfce(
        self,
        sale: SaleRow,
        items: Sequence[SaleItemRow],
        document: Optional[str] = None,
    ) -> InvoiceResponse:
        """Submit ``sale`` for NFC-e authorization."""

        payload = build_nfce_payload(sale, items, document)
        log.info("Emitting NFC-e for sale '%s'", sale.sale_id)

        if self.simulated:
            key = simulated_invoice_key(sale.sale_id, year=datetime.now(UTC).year)
            log.info("NFC-e for sale '%s' authorized in test mode", sale.sale_id)
            return InvoiceResponse(
                success=True,
                message="NFC-e authorized (test environment)",
                invoice_key=key,
                invoice_url=SIMULATED_URL.format(key=key),
            )

        try:
            response = self.session.post(
                f"{self.api_url}/nfce",
                json=payload,
                headers=self.headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            log.error("NFC-e emission failed for sale '%s': %s", sale.sale_id, exc)
            return InvoiceResponse(success=False, message=f"Error communicating with SEFAZ: {exc}")
        except ValueError as exc:
            log.error("NFC-e API returned invalid JSON for sale '%s': %s", sale.sale_id, exc)
            return InvoiceResponse(success=False, message="Invalid response from the invoice API")

        key = data.get("chave")
        if not key:
            log.error("NFC-e API response for sale '%s' had no access key", sale.sale_id)
            return InvoiceResponse(success=False, message=str(data.get("message", "Invoice rejected")))
        return InvoiceResponse(
            success=True,
            message="NFC-e authorized",
            invoice_key=str(key),
            invoice_url=data.get("url_danfe"),
        )

    def cancel_invoice(self, invoice_key: str, justification: str) -> bool:
        """Request cancellation of an authorized invoice."""

        log.info("Cancelling NFC-e '%s': %s", invoice_key, justification)
        if self.simulated:
            return True
        try:
            response = self.session.post(
                f"{self.api_url}/nfce/{invoice_key}/cancelamento",
                json={"justificativa": justification},
                headers=self.headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            log.error("NFC-e cancellation failed for '%s': %s", invoice_key, exc)
            return False
        return True
