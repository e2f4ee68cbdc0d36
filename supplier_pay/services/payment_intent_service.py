from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from uuid import uuid4

from supplier_pay.config import settings

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')
DEFAULT_PENDING_WINDOW_MINUTES = settings.pending_window_minutes
NO_PRICED_ITEMS_WARNING = 'No priced items in plan'


@dataclass(frozen=True)
class Supplier:
    supplier_id: str
    name: str
    payout_address: str | None = None
    lead_time_days: int | None = None


@dataclass(frozen=True)
class Sku:
    sku: str
    name: str
    supplier_id: str | None = None
    unit: str | None = None
    shelf_life_days: int | None = None
    unit_cost_usd: object = None


@dataclass(frozen=True)
class Catalog:
    suppliers: dict[str, Supplier]
    skus: dict[str, Sku]
    budget_cap_usd: Decimal | None = None
    buyer_id: str | None = None
    buyer_timezone: str | None = None

    @classmethod
    def from_plan_input(cls, plan_input: dict) -> Catalog:
        suppliers: dict[str, Supplier] = {}
        for row in plan_input.get('suppliers') or []:
            if row.get('supplierId') in (None, ''):
                continue
            supplier_id = str(row.get('supplierId'))
            suppliers[supplier_id] = Supplier(
                supplier_id=supplier_id,
                name=str(row.get('name') or supplier_id),
                payout_address=row.get('payoutAddress'),
                lead_time_days=row.get('leadTimeDays'),
            )

        skus: dict[str, Sku] = {}
        for row in plan_input.get('skus') or []:
            if row.get('sku') in (None, ''):
                continue
            sku_id = str(row.get('sku'))
            skus[sku_id] = Sku(
                sku=sku_id,
                name=str(row.get('name') or sku_id),
                supplier_id=row.get('supplierId'),
                unit=row.get('unit'),
                shelf_life_days=row.get('shelfLifeDays'),
                unit_cost_usd=row.get('unitCostUsd'),
            )

        restaurant = plan_input.get('restaurant') or {}
        owner_prefs = plan_input.get('ownerPrefs') or {}
        return cls(
            suppliers=suppliers,
            skus=skus,
            budget_cap_usd=finite_decimal(owner_prefs.get('budgetCapUsd')),
            buyer_id=restaurant.get('id'),
            buyer_timezone=restaurant.get('timezone'),
        )


@dataclass(frozen=True)
class TransferItem:
    sku: str
    units: object
    unit_cost_usd: object

    def to_dict(self) -> dict:
        return {'sku': self.sku, 'units': self.units, 'unitCostUsd': self.unit_cost_usd}


@dataclass(frozen=True)
class Transfer:
    supplier_id: str
    amount_usd: Decimal
    memo: str
    items: tuple[TransferItem, ...]

    def to_dict(self) -> dict:
        return {
            'supplierId': self.supplier_id,
            'amountUsd': float(self.amount_usd),
            'memo': self.memo,
            'items': [item.to_dict() for item in self.items],
        }


@dataclass(frozen=True)
class TransferComputation:
    transfers: tuple[Transfer, ...]
    total_usd: Decimal
    warnings: tuple[str, ...] = ()
    budget_cap_usd: Decimal | None = None


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    created_at: datetime
    pending_until: datetime
    buyer_id: str | None
    buyer_timezone: str | None
    plan_generated_at: str | None
    computation: TransferComputation = field(repr=False)

    @property
    def transfers(self) -> tuple[Transfer, ...]:
        return self.computation.transfers

    @property
    def total_usd(self) -> Decimal:
        return self.computation.total_usd

    def to_dict(self) -> dict:
        validation: dict = {}
        if self.computation.budget_cap_usd is not None:
            validation['budgetCapUsd'] = float(self.computation.budget_cap_usd)
        validation['totalUsd'] = float(self.computation.total_usd)
        if self.computation.warnings:
            validation['warnings'] = list(self.computation.warnings)
        return {
            'intentId': self.intent_id,
            'createdAt': iso_timestamp(self.created_at),
            'buyer': {'id': self.buyer_id, 'timezone': self.buyer_timezone},
            'planGeneratedAt': self.plan_generated_at,
            'pendingUntil': iso_timestamp(self.pending_until),
            'transfers': [transfer.to_dict() for transfer in self.transfers],
            'validation': validation,
        }


class PaymentIntentRejected(ValueError):
    def __init__(
        self,
        error: str,
        *,
        warnings: list[str],
        budget_cap_usd: Decimal | None = None,
        total_usd: Decimal | None = None,
    ) -> None:
        super().__init__(error)
        self.error = error
        self.warnings = list(warnings)
        self.budget_cap_usd = budget_cap_usd
        self.total_usd = total_usd

    def to_dict(self) -> dict:
        payload: dict = {'error': self.error}
        if self.budget_cap_usd is not None:
            payload['budgetCapUsd'] = float(self.budget_cap_usd)
        if self.total_usd is not None:
            payload['totalUsd'] = float(self.total_usd)
        payload['warnings'] = list(self.warnings)
        return payload


def finite_decimal(value: object) -> Decimal | None:
    """Return ``value`` as a Decimal when it is a real, finite JSON number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        # str() keeps the decimal text the number was written with.
        return Decimal(str(value))
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    return None


def round_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def iso_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def resolve_pending_window_minutes(value: object) -> int:
    minutes = finite_decimal(value)
    if minutes is None or minutes <= 0:
        return DEFAULT_PENDING_WINDOW_MINUTES
    floored = int(minutes.to_integral_value(rounding=ROUND_FLOOR))
    return floored if floored >= 1 else DEFAULT_PENDING_WINDOW_MINUTES


def compute_transfers(
    plan: dict,
    catalog: Catalog,
    budget_cap_usd: Decimal | None = None,
) -> TransferComputation:
    warnings: list[str] = []
    transfers: list[Transfer] = []

    for order in plan.get('orders') or []:
        supplier_id = order.get('supplierId')
        if supplier_id is None or str(supplier_id) not in catalog.suppliers:
            warnings.append(f'Plan includes unknown supplierId: {supplier_id}')
            continue

        subtotal = Decimal('0')
        audit_items: list[TransferItem] = []
        for item in order.get('items') or []:
            sku = catalog.skus.get(str(item.get('sku'))) if item.get('sku') is not None else None
            if sku is None:
                warnings.append(f"Plan includes unknown sku: {item.get('sku')}")
                continue

            units = finite_decimal(item.get('orderUnits'))
            if units is None or units <= 0:
                continue

            unit_cost = finite_decimal(sku.unit_cost_usd)
            if unit_cost is None:
                warnings.append(f'Missing unitCostUsd for sku {sku.sku} ({sku.name})')
                continue

            subtotal += units * unit_cost
            audit_items.append(TransferItem(sku=sku.sku, units=item.get('orderUnits'), unit_cost_usd=sku.unit_cost_usd))

        amount = round_cents(subtotal)
        if amount > 0:
            transfers.append(
                Transfer(
                    supplier_id=str(supplier_id),
                    amount_usd=amount,
                    memo=f"Mozi inventory order {order.get('orderDate')}",
                    items=tuple(audit_items),
                )
            )

    total = round_cents(sum((transfer.amount_usd for transfer in transfers), Decimal('0')))

    if budget_cap_usd is not None and total > budget_cap_usd:
        raise PaymentIntentRejected(
            'Budget cap exceeded',
            warnings=warnings,
            budget_cap_usd=budget_cap_usd,
            total_usd=total,
        )
    if not transfers:
        raise PaymentIntentRejected(
            'No executable transfers computed',
            warnings=warnings or [NO_PRICED_ITEMS_WARNING],
        )

    return TransferComputation(
        transfers=tuple(transfers),
        total_usd=total,
        warnings=tuple(warnings),
        budget_cap_usd=budget_cap_usd,
    )


def build_payment_intent(
    plan_input: dict,
    plan: dict,
    pending_window_minutes: object = None,
    *,
    now: datetime | None = None,
    intent_id_factory: Callable[[], object] = uuid4,
) -> PaymentIntent:
    """
    Price a purchase plan against the location's catalog.

    Only ``intent_id`` and the timestamps vary between calls; everything on the
    returned ``computation`` is a pure function of the plan, catalog and cap.
    """
    catalog = Catalog.from_plan_input(plan_input)
    computation = compute_transfers(plan, catalog, catalog.budget_cap_usd)

    created_at = now or datetime.now(tz=timezone.utc)
    minutes = resolve_pending_window_minutes(pending_window_minutes)
    intent = PaymentIntent(
        intent_id=str(intent_id_factory()),
        created_at=created_at,
        pending_until=created_at + timedelta(minutes=minutes),
        buyer_id=catalog.buyer_id,
        buyer_timezone=catalog.buyer_timezone,
        plan_generated_at=plan.get('generatedAt'),
        computation=computation,
    )
    logger.debug(
        'Built payment intent %s: %d transfers totalling %s USD',
        intent.intent_id,
        len(intent.transfers),
        intent.total_usd,
    )
    return intent
