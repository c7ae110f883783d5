from __future__ import annotations

import json
from typing import Iterable, List, Optional

import httpx

from wastewise.logging import get_logger
from wastewise.service.errors import (
    AdvisorUnavailableError,
    RateLimitedError,
    ValidationError,
)
from wastewise.service.permissions import check_permission
from wastewise.storage.models import Account, InventoryItem, WasteLog

logger = get_logger(__name__)

CONSULTANT_PROMPT = (
    "You are an expert restaurant waste management consultant. Give specific, "
    "actionable advice based on the inventory and waste data provided. Keep "
    "answers concise and practical."
)
INVENTORY_PROMPT = (
    "You are a food inventory management expert. Analyze expiry dates and "
    "stock levels and point out patterns that lead to waste."
)

NO_SUGGESTION_DATA = (
    "Add some inventory items and waste logs to get personalized AI suggestions "
    "for reducing food waste."
)
NO_EXPIRY_DATA = (
    "Add inventory items with expiry dates to get AI-powered expiry pattern analysis."
)
NO_SEARCH_DATA = (
    "Add some inventory items and waste logs so the assistant has data to search."
)


def _item_view(item: InventoryItem) -> dict:
    return {
        "name": item.name,
        "quantity": item.quantity,
        "unit": item.unit,
        "category": item.category,
        "status": item.status,
        "expiry_date": item.expiry_date.isoformat(),
    }


def _log_view(log: WasteLog) -> dict:
    return {
        "item": log.item_name,
        "quantity": log.quantity,
        "unit": log.unit,
        "reason": log.reason,
        "date": log.created_at.date().isoformat(),
    }


def _compact(records: Iterable[dict]) -> str:
    return json.dumps(list(records), separators=(",", ":"))


class AdvisorService:
    """Waste-reduction advice from an OpenAI-compatible chat completions API.

    Supports:
    - Free-text questions over the caller's recent inventory and waste logs
    - General waste-reduction suggestions
    - Expiry pattern analysis of active and expired stock

    Callers without any data get a fixed hint and no upstream request is made.
    """

    def __init__(
        self,
        store,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-3.5-turbo",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        """Check if the service has a valid API key configured."""
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client for API calls."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(60.0, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def _complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int,
        temperature: float,
        user_id: str,
        operation: str,
    ) -> str:
        if not self.is_configured:
            logger.warning("advisor_no_api_key", user_id=user_id, operation=operation)
            raise AdvisorUnavailableError("AI service is not configured")

        try:
            client = await self._get_client()
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            error_body = None
            try:
                error_body = e.response.json()
            except ValueError:
                pass
            logger.error(
                "advisor_api_error",
                user_id=user_id,
                operation=operation,
                status_code=e.response.status_code,
                error_body=error_body,
                model=self.model,
            )
            error_code = ((error_body or {}).get("error") or {}).get("code") if isinstance(
                error_body, dict
            ) else None
            if e.response.status_code == 429 or error_code == "insufficient_quota":
                raise RateLimitedError("AI quota exceeded") from e
            raise AdvisorUnavailableError(
                f"AI request failed: {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            logger.error("advisor_timeout", user_id=user_id, operation=operation, error=str(e))
            raise AdvisorUnavailableError("AI request timed out") from e
        except httpx.HTTPError as e:
            logger.error(
                "advisor_connection_error", user_id=user_id, operation=operation, error=str(e)
            )
            raise AdvisorUnavailableError("failed to connect to AI service") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            logger.error("advisor_malformed_response", user_id=user_id, operation=operation)
            raise AdvisorUnavailableError("AI service returned an unexpected response") from e
        logger.info(
            "advisor_success", user_id=user_id, operation=operation, answer_length=len(content)
        )
        return content.strip()

    def _recent(self, actor: Account, items: int, logs: int) -> tuple[List[InventoryItem], List[WasteLog]]:
        inventory = self.store.list_items(actor.id, statuses=["active"])[:items]
        waste = self.store.list_waste_logs(actor.id, limit=logs)
        return inventory, waste

    async def search(self, actor: Account, query: Optional[str]) -> dict:
        check_permission(actor, "analytics:read")
        question = (query or "").strip()
        if not question:
            raise ValidationError("search query is required", detail={"field": "query"})
        inventory, waste = self._recent(actor, 10, 5)
        if not inventory and not waste:
            return {"query": question, "results": NO_SEARCH_DATA, "has_data": False}
        prompt = (
            f"Current inventory: {_compact(map(_item_view, inventory))}\n"
            f"Recent waste: {_compact(map(_log_view, waste))}\n\n"
            f"Question: {question}"
        )
        answer = await self._complete(
            CONSULTANT_PROMPT,
            prompt,
            max_tokens=350,
            temperature=0.7,
            user_id=actor.id,
            operation="search",
        )
        return {"query": question, "results": answer, "has_data": True}

    async def suggestions(self, actor: Account) -> dict:
        check_permission(actor, "analytics:read")
        inventory, waste = self._recent(actor, 20, 10)
        if not inventory and not waste:
            return {"suggestions": NO_SUGGESTION_DATA, "has_data": False, "data_points": 0}
        prompt = (
            f"Inventory: {_compact(map(_item_view, inventory))}\n"
            f"Waste history: {_compact(map(_log_view, waste))}\n\n"
            "Suggest 3 to 5 concrete ways this restaurant can reduce food waste."
        )
        answer = await self._complete(
            CONSULTANT_PROMPT,
            prompt,
            max_tokens=400,
            temperature=0.7,
            user_id=actor.id,
            operation="suggestions",
        )
        return {
            "suggestions": answer,
            "has_data": True,
            "data_points": len(inventory) + len(waste),
        }

    async def expiry_analysis(self, actor: Account) -> dict:
        check_permission(actor, "analytics:read")
        items = sorted(
            self.store.list_items(actor.id, statuses=["active", "expired"]),
            key=lambda item: item.expiry_date,
        )
        if not items:
            return {"analysis": NO_EXPIRY_DATA, "has_data": False, "item_count": 0}
        prompt = (
            f"Items by expiry date: {_compact(map(_item_view, items))}\n\n"
            "Identify expiry patterns, the items most at risk, and how to rotate "
            "stock to avoid losses."
        )
        answer = await self._complete(
            INVENTORY_PROMPT,
            prompt,
            max_tokens=300,
            temperature=0.6,
            user_id=actor.id,
            operation="expiry_analysis",
        )
        return {"analysis": answer, "has_data": True, "item_count": len(items)}

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
