from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from backend.currency_conversion import CurrencyNormalizer, normalize_currency
from backend.errors import ValidationError

ZERO = Decimal("0")
ONE = Decimal("1")
CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.00000001")
INPUT_PRECISION = Decimal("0.0001")
DEFAULT_TARGET_CURRENCY = "USD"


@dataclass(frozen=True)
class KeepTarget:
    """No override and no forced resync: reuse the stored target when still valid."""


@dataclass(frozen=True)
class OverrideTarget:
    amount: Decimal


@dataclass(frozen=True)
class RecalculateTarget:
    """Discard any manual correction and resync to the market rate."""


TargetIntent = Union[KeepTarget, OverrideTarget, RecalculateTarget]


@dataclass(frozen=True)
class StoredAmounts:
    amount: Decimal
    currency: str
    target_currency: str
    target_amount: Decimal
    fx_rate_used: Decimal


@dataclass(frozen=True)
class ItemAmounts:
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    target_currency: str
    target_amount: Decimal
    fx_rate_used: Decimal


def intent_from_request(
    target_amount: Decimal | float | int | str | None,
    auto_calculate_target_currency: Optional[bool],
) -> TargetIntent:
    if auto_calculate_target_currency:
        return RecalculateTarget()
    if target_amount is not None:
        return OverrideTarget(_coerce_amount(target_amount))
    return KeepTarget()


def compute_native_amount(quantity: Decimal, unit_price: Decimal) -> Decimal:
    if quantity < ZERO:
        raise ValidationError("Quantity must be zero or greater.")
    if unit_price < ZERO:
        raise ValidationError("Unit price must be zero or greater.")
    return quantity * unit_price


def compute_item_amounts(
    quantity: Decimal | float | int | str,
    unit_price: Decimal | float | int | str,
    currency: str,
    normalizer: CurrencyNormalizer,
    *,
    target_currency: str = DEFAULT_TARGET_CURRENCY,
    intent: TargetIntent = RecalculateTarget(),
    previous: StoredAmounts | None = None,
) -> ItemAmounts:
    """Compute the native and reporting-currency amounts of one line item.

    ``amount`` is always ``quantity * unit_price``. How ``target_amount`` is
    derived depends on ``intent``; a forced recalculation always calls the
    normalizer, an override is taken verbatim, and keep reuses ``previous``
    only while the native amount and both currencies are unchanged.
    """
    # Stored as Numeric(14, 4); amount must come from the stored values.
    coerced_quantity = quantize_input(_coerce_amount(quantity))
    coerced_unit_price = quantize_input(_coerce_amount(unit_price))
    amount = compute_native_amount(coerced_quantity, coerced_unit_price)
    source = normalize_currency(currency)
    target = normalize_currency(target_currency)

    if isinstance(intent, KeepTarget):
        if (
            previous is not None
            and previous.amount == amount
            and normalize_currency(previous.currency) == source
            and normalize_currency(previous.target_currency) == target
        ):
            return ItemAmounts(
                quantity=coerced_quantity,
                unit_price=coerced_unit_price,
                amount=amount,
                target_currency=target,
                target_amount=previous.target_amount,
                fx_rate_used=previous.fx_rate_used,
            )
        intent = RecalculateTarget()

    if isinstance(intent, OverrideTarget):
        override = _coerce_amount(intent.amount)
        if override < ZERO:
            raise ValidationError("Target amount must be zero or greater.")
        if amount != ZERO:
            fx_rate_used = quantize_rate(override / amount)
        else:
            fx_rate_used = previous.fx_rate_used if previous is not None else ONE
        return ItemAmounts(
            quantity=coerced_quantity,
            unit_price=coerced_unit_price,
            amount=amount,
            target_currency=target,
            target_amount=quantize_money(override),
            fx_rate_used=fx_rate_used,
        )

    if isinstance(intent, RecalculateTarget):
        normalized, rate = normalizer.normalize(amount, source, target)
        return ItemAmounts(
            quantity=coerced_quantity,
            unit_price=coerced_unit_price,
            amount=amount,
            target_currency=target,
            target_amount=quantize_money(normalized),
            fx_rate_used=quantize_rate(rate),
        )

    raise TypeError(f"Unsupported target intent: {intent!r}")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_rate(value: Decimal) -> Decimal:
    return value.quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)


def quantize_input(value: Decimal) -> Decimal:
    return value.quantize(INPUT_PRECISION, rounding=ROUND_HALF_UP)


def _coerce_amount(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
