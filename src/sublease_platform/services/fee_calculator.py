"""Fee Calculator - per-party platform service fee.

Each party pays their own fee; the two fees are never combined into one
charge. Rent itself is paid off-platform, only the fee is collected.

    fee = rent x (2.5% + 1% if paying by card)

Amounts are integers in the smallest currency unit (cents). Fractional
cents are rounded half-up: 5366.655 -> 5367.
"""

import logging
import re
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sublease_platform.domain.enums import PaymentMethod
from sublease_platform.domain.exceptions import ValidationError

logger = logging.getLogger(__name__)

BASE_FEE_BPS = 250  # 2.5%, applied to each party independently
CARD_SURCHARGE_BPS = 100  # 1.0%, only on a charge paid by card
BPS_DENOMINATOR = 10_000

# Smallest charge the payment processor accepts, in cents.
MINIMUM_CHARGE_CENTS = 50

_NO_VALUE = re.compile(r"^\s*(TBD|n/?a)?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class FeeQuote:
    """One party's fee for one payment method."""

    rent_cents: int
    payment_method: PaymentMethod
    base_fee_cents: int
    card_surcharge_cents: int
    fee_cents: int
    charge_cents: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["payment_method"] = self.payment_method.value
        return data


def _apply_bps(amount_cents: int, bps: int) -> int:
    """Return amount x bps / 10000 rounded half-up to a whole cent."""
    exact = Decimal(amount_cents) * Decimal(bps) / Decimal(BPS_DENOMINATOR)
    return int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fee_rate_bps(payment_method: PaymentMethod) -> int:
    if payment_method == PaymentMethod.CARD:
        return BASE_FEE_BPS + CARD_SURCHARGE_BPS
    return BASE_FEE_BPS


def calculate_fee(rent_cents: int, payment_method: PaymentMethod | str) -> FeeQuote:
    """Quote one party's fee for *rent_cents* paid by *payment_method*.

    The total rate is rounded once, so 3.5% of rent is never off by a cent
    from rounding the base fee and the surcharge separately. The split into
    base and surcharge is reported for display; the surcharge absorbs any
    rounding remainder.

    Raises:
        ValidationError: rent is not a positive integer or the method is unknown.
    """
    if isinstance(rent_cents, bool) or not isinstance(rent_cents, int):
        raise ValidationError(f"Rent must be an integer number of cents, got {rent_cents!r}")
    if rent_cents <= 0:
        raise ValidationError("Rent must be greater than zero to compute a fee")
    try:
        method = PaymentMethod(payment_method)
    except ValueError:
        raise ValidationError(f"Unknown payment method: {payment_method}")

    fee_cents = _apply_bps(rent_cents, fee_rate_bps(method))
    base_fee_cents = min(_apply_bps(rent_cents, BASE_FEE_BPS), fee_cents)
    surcharge_cents = fee_cents - base_fee_cents

    return FeeQuote(
        rent_cents=rent_cents,
        payment_method=method,
        base_fee_cents=base_fee_cents,
        card_surcharge_cents=surcharge_cents,
        fee_cents=fee_cents,
        charge_cents=max(MINIMUM_CHARGE_CENTS, fee_cents),
    )


def is_unspecified(value) -> bool:
    """True for a rent value that was deliberately left open (blank, "TBD", "N/A")."""
    return value is None or (isinstance(value, str) and _NO_VALUE.match(value) is not None)


def parse_dollars_to_cents(value) -> Optional[int]:
    """Parse a rent string such as ``"$1,533.33"`` into cents.

    Returns None for blank, "TBD", "N/A" or anything unparseable; negative
    amounts are returned as-is so the caller can reject them.
    """
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value * 100
    text = str(value)
    if _NO_VALUE.match(text):
        return None
    cleaned = text.strip().replace("$", "").replace(",", "").strip()
    try:
        amount = Decimal(cleaned)
    except ArithmeticError:
        logger.debug("Unparseable rent value %r", value)
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(amount_cents: int) -> str:
    """Format cents as ``$1,234.56``."""
    sign = "-" if amount_cents < 0 else ""
    dollars, cents = divmod(abs(amount_cents), 100)
    return f"{sign}${dollars:,}.{cents:02d}"
