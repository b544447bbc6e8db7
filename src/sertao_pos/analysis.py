"""Business questions answered by a hosted language model.

The assistant receives a plain-text snapshot of stock, recent sales and the
financial log followed by the operator's question, and returns free text.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

import requests

from . import log
from .constants import DEFAULT_ASSISTANT_MODEL, FinancialType
from .data_manager import FinancialRow, ProductRow, SaleRow


GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
RECENT_SALES = 5

EMPTY_ANSWER = "I could not produce an analysis right now."
FAILURE_ANSWER = "Sorry, the assistant could not be reached. Check the API key in config.ini."

PROMPT_TEMPLATE = """\
You are a senior management assistant for "{store}", which runs an ice factory (Matriz) and a drinks store (Filial).

Current business data:

--- STOCK AND PRICES ---
{inventory}

--- RECENT SALES ---
{sales}

--- RECENT FINANCIALS ---
{financials}

Operator question: "{question}"

Answer strategically, practically and concisely. For finance questions suggest improvements; for stock questions warn about low levels. Use Markdown.
"""


def _inventory_line(product: ProductRow) -> str:
    return (
        f"{product.product_name}: Matriz({product.stock_wholesale}), Filial({product.stock_retail}), "
        f"RetailPrice(R${product.price_retail}), WholesalePrice(R${product.price_wholesale})"
    )


def _sale_line(sale: SaleRow) -> str:
    return f"Date: {sale.timestamp_iso}, Total: R${sale.total}, Customer: {sale.customer_name}, Unit: {sale.business_unit}"


def _financial_line(record: FinancialRow) -> str:
    sign = "+" if record.record_type == FinancialType.INCOME.value else "-"
    return f"{sign} R${record.amount} ({record.description})"


def build_business_prompt(
    products: Sequence[ProductRow],
    sales: Sequence[SaleRow],
    financials: Sequence[FinancialRow],
    question: str,
    *,
    store: str = "Gelo do Sertão",
) -> str:
    """Render the prompt; ``sales`` is expected newest first and is cut to five."""

    return PROMPT_TEMPLATE.format(
        store=store,
        inventory="\n".join(_inventory_line(product) for product in products),
        sales="\n".join(_sale_line(sale) for sale in sales[:RECENT_SALES]),
        financials="\n".join(_financial_line(record) for record in financials),
        question=question,
    )


def extract_text(data: Dict[str, Any]) -> Optional[str]:
    """Pull the generated text out of a ``generateContent`` response body."""

    for candidate in data.get("candidates") or []:
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if text:
            return text
    return None


class AssistantClient:
    """Thin HTTP client for the Gemini ``generateContent`` endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = DEFAULT_ASSISTANT_MODEL,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def ask(self, prompt: str) -> str:
        """Send ``prompt`` and return the answer, or a fixed apology on failure."""

        if not self.api_key:
            log.warning("Assistant API key not configured")
            return FAILURE_ANSWER
        try:
            response = self.session.post(
                GEMINI_URL.format(model=self.model),
                params={"key": self.api_key},
                json={"contents": [{"parts": [{"text": prompt}]}]},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            log.error("Assistant request failed: %s", exc)
            return FAILURE_ANSWER
        return extract_text(data) or EMPTY_ANSWER


def get_business_analysis(
    client: AssistantClient,
    products: Sequence[ProductRow],
    sales: Sequence[SaleRow],
    financials: Sequence[FinancialRow],
    question: str,
    *,
    store: str = "Gelo do Sertão",
) -> str:
    prompt = build_business_prompt(products, sales, financials, question, store=store)
    return client.ask(prompt)
