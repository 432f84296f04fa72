"""
Reduction of a transaction set into sales KPIs.

Pure functions. Money is accumulated as exact Decimals and rounded only
when the Summary is built, so the result does not depend on record order.
"""

from collections import defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List

from ..domain.entities import (
    CategoryBreakdown,
    CustomerType,
    EmployeeBreakdown,
    LineItem,
    ProductSales,
    RawRecord,
    Summary,
)

CENT = Decimal("0.01")
ZERO = Decimal("0")
UNKNOWN_EMPLOYEE = "Unknown"


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def line_gross(item: LineItem) -> Decimal:
    """Explicit gross total, or unit price times quantity."""
    if item.gross_total is not None:
        return item.gross_total
    return item.unit_price * item.quantity


def line_net(item: LineItem) -> Decimal:
    return line_gross(item) - item.discount_total


def live_records(records: Iterable[RawRecord]) -> List[RawRecord]:
    return [r for r in records if not r.voided]


def summarize_orders(records: Iterable[RawRecord]) -> Summary:
    """
    Summarize one entity's transactions for one period.

    Voided records and voided line items contribute nothing. Breakdowns are
    sorted by net sales descending, ties broken by name.
    """
    records = live_records(records)
    if not records:
        return Summary.empty()

    net_sales = ZERO
    gross_sales = ZERO
    total_items = 0
    customer_types = {CustomerType.RECREATIONAL.value: 0, CustomerType.MEDICAL.value: 0}

    cat_net: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    cat_units: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    cat_txns: Dict[str, int] = defaultdict(int)

    emp_txns: Dict[str, int] = defaultdict(int)
    emp_net: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    emp_items: Dict[str, Decimal] = defaultdict(lambda: ZERO)

    for record in records:
        customer_types[CustomerType.classify(record.customer_type).value] += 1

        employee = record.employee or UNKNOWN_EMPLOYEE
        emp_txns[employee] += 1

        for item in record.line_items:
            if item.voided:
                continue
            gross = line_gross(item)
            net = gross - item.discount_total

            total_items += 1
            net_sales += net
            gross_sales += gross
            emp_net[employee] += net
            emp_items[employee] += item.quantity

            cat_net[item.category] += net
            cat_units[item.category] += item.quantity
            cat_txns[item.category] += 1

    transaction_count = len(records)

    categories = [
        CategoryBreakdown(
            name=name,
            net_sales=round2(cat_net[name]),
            units=cat_units[name],
            transaction_count=cat_txns[name],
        )
        for name in cat_net
    ]
    employees = [
        EmployeeBreakdown(
            name=name,
            transactions=emp_txns[name],
            net_sales=round2(emp_net[name]),
            items=emp_items[name],
            avg_basket=round2(emp_net[name] / emp_txns[name]),
        )
        for name in emp_txns
    ]

    return Summary(
        transaction_count=transaction_count,
        net_sales=round2(net_sales),
        gross_sales=round2(gross_sales),
        avg_basket=round2(net_sales / transaction_count),
        total_items=total_items,
        customer_types=customer_types,
        categories=tuple(sorted(categories, key=lambda c: (-c.net_sales, c.name))),
        employees=tuple(sorted(employees, key=lambda e: (-e.net_sales, e.name))),
    )


def top_products(records: Iterable[RawRecord], limit: int = 15) -> List[ProductSales]:
    """Best-selling products by net sales, keyed by name and brand."""
    units: Dict[tuple, Decimal] = defaultdict(lambda: ZERO)
    net: Dict[tuple, Decimal] = defaultdict(lambda: ZERO)
    prices: Dict[tuple, List[Decimal]] = defaultdict(list)
    category: Dict[tuple, str] = {}

    for record in live_records(records):
        for item in record.line_items:
            if item.voided:
                continue
            key = (item.product_name, item.brand)
            category[key] = min(category.get(key, item.category), item.category)
            units[key] += item.quantity
            net[key] += line_net(item)
            if item.unit_price:
                prices[key].append(item.unit_price)

    products = [
        ProductSales(
            name=name,
            brand=brand,
            category=category[(name, brand)],
            units_sold=units[(name, brand)],
            net_sales=round2(net[(name, brand)]),
            avg_price=(
                round2(sum(prices[(name, brand)], ZERO) / len(prices[(name, brand)]))
                if prices[(name, brand)]
                else Decimal("0.00")
            ),
        )
        for name, brand in net
    ]
    products.sort(key=lambda p: (-p.net_sales, p.name, p.brand))
    return products[:limit]
