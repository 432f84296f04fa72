"""
Domain entities for sales aggregation.

Core business objects representing entities (stores), periods, raw
transactions and the summaries computed from them. These entities are
framework-agnostic value objects; money is carried as Decimal.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class CustomerType(str, Enum):
    """Two-bucket customer classification."""

    RECREATIONAL = "rec"
    MEDICAL = "med"

    @classmethod
    def classify(cls, raw: Optional[str]) -> "CustomerType":
        """Map an upstream classification; absent or unrecognized is recreational."""
        if raw and "med" in raw.lower():
            return cls.MEDICAL
        return cls.RECREATIONAL


class RebuildStatus(str, Enum):
    """Terminal outcomes of a rebuild attempt."""

    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class Entity:
    """An independently aggregated business unit (store)."""

    id: str
    name: str
    upstream_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True, order=True)
class Period:
    """
    Inclusive calendar day range.

    Immutable; `end` is the last day that belongs to the period.
    """

    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Period end {self.end} precedes start {self.start}")

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Period":
        return cls(
            start=date.fromisoformat(data["start"]),
            end=date.fromisoformat(data["end"]),
        )


@dataclass(frozen=True)
class PeriodKey:
    """Composite period cache key, serialized only at the storage boundary."""

    entity_id: str
    period_start: date

    def to_storage(self) -> str:
        return f"{self.entity_id}:{self.period_start.isoformat()}"

    @classmethod
    def from_storage(cls, raw: str) -> "PeriodKey":
        entity_id, _, start = raw.rpartition(":")
        if not entity_id:
            raise ValueError(f"Malformed period key: {raw!r}")
        return cls(entity_id=entity_id, period_start=date.fromisoformat(start))


@dataclass(frozen=True)
class LineItem:
    """One line of a transaction."""

    product_name: str
    brand: str
    category: str
    quantity: Decimal
    unit_price: Decimal
    gross_total: Optional[Decimal]
    discount_total: Decimal = Decimal("0")
    voided: bool = False


@dataclass(frozen=True)
class RawRecord:
    """One upstream transaction."""

    id: str
    timestamp: datetime
    voided: bool = False
    customer_type: Optional[str] = None
    employee: Optional[str] = None
    line_items: Tuple[LineItem, ...] = ()


def _money(value: Decimal) -> float:
    return float(value)


@dataclass(frozen=True)
class CategoryBreakdown:
    name: str
    net_sales: Decimal
    units: Decimal
    transaction_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "net_sales": _money(self.net_sales),
            "units": _money(self.units),
            "transaction_count": self.transaction_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoryBreakdown":
        return cls(
            name=str(data["name"]),
            net_sales=Decimal(str(data["net_sales"])),
            units=Decimal(str(data["units"])),
            transaction_count=int(data["transaction_count"]),
        )


@dataclass(frozen=True)
class EmployeeBreakdown:
    name: str
    transactions: int
    net_sales: Decimal
    items: Decimal
    avg_basket: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "transactions": self.transactions,
            "net_sales": _money(self.net_sales),
            "items": _money(self.items),
            "avg_basket": _money(self.avg_basket),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmployeeBreakdown":
        return cls(
            name=str(data["name"]),
            transactions=int(data["transactions"]),
            net_sales=Decimal(str(data["net_sales"])),
            items=Decimal(str(data["items"])),
            avg_basket=Decimal(str(data["avg_basket"])),
        )


@dataclass(frozen=True)
class Summary:
    """
    KPI summary of one entity over one period.

    Currency fields are already rounded to 2 decimals.
    """

    transaction_count: int
    net_sales: Decimal
    gross_sales: Decimal
    avg_basket: Decimal
    total_items: int
    customer_types: Dict[str, int] = field(
        default_factory=lambda: {CustomerType.RECREATIONAL.value: 0, CustomerType.MEDICAL.value: 0}
    )
    categories: Tuple[CategoryBreakdown, ...] = ()
    employees: Tuple[EmployeeBreakdown, ...] = ()

    @classmethod
    def empty(cls) -> "Summary":
        return cls(
            transaction_count=0,
            net_sales=Decimal("0.00"),
            gross_sales=Decimal("0.00"),
            avg_basket=Decimal("0.00"),
            total_items=0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_count": self.transaction_count,
            "net_sales": _money(self.net_sales),
            "gross_sales": _money(self.gross_sales),
            "avg_basket": _money(self.avg_basket),
            "total_items": self.total_items,
            "customer_types": dict(self.customer_types),
            "categories": [c.to_dict() for c in self.categories],
            "employees": [e.to_dict() for e in self.employees],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Summary":
        customer_types = data.get("customer_types") or {}
        return cls(
            transaction_count=int(data["transaction_count"]),
            net_sales=Decimal(str(data["net_sales"])),
            gross_sales=Decimal(str(data["gross_sales"])),
            avg_basket=Decimal(str(data["avg_basket"])),
            total_items=int(data["total_items"]),
            customer_types={
                CustomerType.RECREATIONAL.value: int(customer_types.get("rec", 0)),
                CustomerType.MEDICAL.value: int(customer_types.get("med", 0)),
            },
            categories=tuple(CategoryBreakdown.from_dict(c) for c in data.get("categories", [])),
            employees=tuple(EmployeeBreakdown.from_dict(e) for e in data.get("employees", [])),
        )


@dataclass(frozen=True)
class CacheEntry:
    """Summary of a closed period plus the time it was first written."""

    summary: Summary
    written_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary.to_dict(), "written_at": self.written_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            summary=Summary.from_dict(data["summary"]),
            written_at=datetime.fromisoformat(data["written_at"]),
        )


@dataclass(frozen=True)
class TrendSlot:
    """One period of a trend; exactly one of summary/error is set."""

    period: Period
    summary: Optional[Summary] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.period.start.isoformat(),
            "end": self.period.end.isoformat(),
            "summary": self.summary.to_dict() if self.summary is not None else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class EntityTrend:
    """Trend of a single entity, or the error that prevented building it."""

    entity: Entity
    slots: Tuple[TrendSlot, ...] = ()
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.entity.name,
            "error": self.error,
            "periods": [slot.to_dict() for slot in self.slots],
        }


@dataclass(frozen=True)
class ProductSales:
    """Sales of one product (name + brand) over a record set."""

    name: str
    brand: str
    category: str
    units_sold: Decimal
    net_sales: Decimal
    avg_price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "brand": self.brand,
            "category": self.category,
            "units_sold": _money(self.units_sold),
            "net_sales": _money(self.net_sales),
            "avg_price": _money(self.avg_price),
        }


@dataclass(frozen=True)
class RebuildResult:
    """Outcome of one rebuild attempt."""

    status: RebuildStatus
    duration_ms: int
    entity_count: Optional[int] = None
    error: Optional[str] = None
    published: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value, "duration_ms": self.duration_ms}
        if self.entity_count is not None:
            data["entity_count"] = self.entity_count
        if self.error is not None:
            data["error"] = self.error
        if self.published is not None:
            data["published"] = self.published
        return data

