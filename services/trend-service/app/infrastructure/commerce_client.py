"""
Commerce API endpoints used by the trend service.

Wraps the Retry Client with the two upstream listings the core consumes
(locations and orders) and maps raw JSON into domain records.
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from ..core.logging_config import get_logger
from ..domain.entities import Entity, LineItem, RawRecord
from .retry_client import RetryClient

logger = get_logger(__name__)

LOCATIONS_PATH = "/v0/clientsLocations"
ORDERS_PATH = "/v1/orders/findByLocationId/{upstream_id}"


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(default)


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw / 1000 if raw > 1e11 else raw, tz=timezone.utc)
    text = str(raw or "").strip()
    if not text:
        raise ValueError("record has no timestamp")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def slugify(name: str) -> str:
    return re.sub(r"\s+", "_", name.strip().lower())


def parse_line_item(item: Dict[str, Any]) -> LineItem:
    """Map one upstream cart item to a LineItem."""
    quantity = _decimal(item.get("quantity"), default="1") or Decimal("1")
    gross = _first(item, "grossTotal", "lineTotal", "totalPrice")
    discount = item.get("discountTotal")
    if discount is None:
        discount = sum(
            (_decimal(d.get("discountAmount")) for d in item.get("itemDiscounts") or []),
            Decimal("0"),
        )
    return LineItem(
        product_name=str(_first(item, "productName", "name") or "Unknown"),
        brand=str(_first(item, "brand", "brandName") or ""),
        category=str(_first(item, "category", "productType") or "Other"),
        quantity=quantity,
        unit_price=_decimal(_first(item, "unitPrice", "price")),
        gross_total=_decimal(gross) if gross is not None else None,
        discount_total=_decimal(discount),
        voided=bool(item.get("voided") or item.get("isVoided")),
    )


def parse_record(order: Dict[str, Any]) -> RawRecord:
    """Map one upstream order to a RawRecord."""
    return RawRecord(
        id=str(_first(order, "_id", "id", "orderId") or ""),
        timestamp=_parse_timestamp(_first(order, "createdAt", "completedOn", "timestamp")),
        voided=bool(order.get("voided") or order.get("isVoided")),
        customer_type=_optional_str(order.get("customerType")),
        employee=_optional_str(_first(order, "budtender", "fulfilledBy", "fullName", "employee")),
        line_items=tuple(parse_line_item(item) for item in order.get("itemsInCart") or []),
    )


class CommerceAPIClient:
    """
    Upstream commerce API.

    The entity listing is fetched once and memoized for the process; the
    transaction listing is always fetched fresh.
    """

    def __init__(self, retry_client: RetryClient, excluded_names: Iterable[str] = ()):
        """
        Args:
            retry_client: Shared paginating client
            excluded_names: Locations whose name contains any of these are ignored
        """
        self.retry_client = retry_client
        self.excluded_names = [name.lower() for name in excluded_names]
        self._entities: Optional[List[Entity]] = None

    async def list_entities(self) -> List[Entity]:
        """List entities, excluding configured non-retail locations."""
        if self._entities is not None:
            return self._entities

        data = await self.retry_client.get_json(LOCATIONS_PATH)
        if isinstance(data, dict):
            data = data.get("locations") or data.get("data") or []

        entities = []
        for loc in data or []:
            name = str(loc.get("name") or "")
            if any(excluded in name.lower() for excluded in self.excluded_names):
                continue
            upstream_id = _first(loc, "locationId", "importId", "import_id", "_id", "id")
            if upstream_id is None:
                logger.warning("location_without_id", name=name)
                continue
            entities.append(Entity(id=slugify(name), name=name, upstream_id=str(upstream_id)))

        self._entities = entities
        logger.info("entities_loaded", count=len(entities), names=[e.name for e in entities])
        return entities

    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        for entity in await self.list_entities():
            if entity.id == entity_id:
                return entity
        return None

    async def fetch_records(self, entity: Entity, start: date, end: date) -> List[RawRecord]:
        """
        Fetch every transaction of an entity between two dates (inclusive).

        Raises:
            UpstreamError: When the fetch fails; no partial result is returned
        """
        page = await self.retry_client.fetch_page(
            ORDERS_PATH.format(upstream_id=entity.upstream_id),
            params={
                "created_after": start.isoformat(),
                "created_before": end.isoformat(),
                "order_by": "asc",
            },
        )

        records = []
        skipped = 0
        for order in page.records:
            try:
                records.append(parse_record(order))
            except (ValueError, TypeError, AttributeError) as e:
                skipped += 1
                logger.warning("record_parse_failed", entity=entity.id, error=str(e))

        logger.info(
            "records_fetched",
            entity=entity.id,
            start=start.isoformat(),
            end=end.isoformat(),
            records=len(records),
            skipped=skipped,
        )
        return records
