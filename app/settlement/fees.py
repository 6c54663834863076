"""
Fee split calculation for marketplace payments.

Three parties share every payment: the client pays the agreed base price
plus a client fee, the platform keeps a fee taken from the provider's
side, and the provider receives the remainder.

    client_total = base + base * client_pct / 100
    platform_fee = base * provider_pct / 100
    provider_net = base - platform_fee

All arithmetic is Decimal, rounded half-up to the currency's minor unit.
provider_net is derived by subtraction so the rounding remainder always
lands on the platform fee line and base == platform_fee + provider_net
holds exactly.

Amounts are stored as integer minor units (to_minor_units /
from_minor_units); Decimal is what the calculator and the gateway see.

Usage:
    from settlement.fees import FeeCalculator

    split = FeeCalculator.compute_split(
        Decimal("100.00"),
        platform_fee_percent=Decimal("10"),
        client_fee_percent=Decimal("5"),
        provider_fee_percent=Decimal("10"),
    )
    split.client_total  # Decimal("105.00")
    split.provider_net  # Decimal("90.00")
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from settlement.exceptions import SettlementValidationError

HUNDRED = Decimal("100")

# ISO-4217 minor units that differ from the default of 2
CURRENCY_MINOR_UNITS = {
    "BHD": 3,
    "CLP": 0,
    "HUF": 0,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "TWD": 0,
    "VND": 0,
}


def minor_unit_places(currency: str) -> int:
    return CURRENCY_MINOR_UNITS.get((currency or "USD").upper(), 2)


def minor_unit_exponent(currency: str) -> Decimal:
    """Return the quantization exponent for a currency (Decimal("0.01") for USD)."""
    return Decimal(1).scaleb(-minor_unit_places(currency))


def to_decimal(value, field_name: str = "amount") -> Decimal:
    """
    Convert an int, str or Decimal to Decimal.

    Floats are refused outright: a binary float has already lost the
    exact cent value by the time it gets here.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise SettlementValidationError(
            f"{field_name} must be a Decimal, int or numeric string, not {type(value).__name__}",
            details={field_name: repr(value)},
        )
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise SettlementValidationError(
                f"{field_name} is not a valid number",
                details={field_name: str(value)},
            ) from exc
    if not result.is_finite():
        raise SettlementValidationError(
            f"{field_name} must be finite", details={field_name: str(value)}
        )
    return result


def quantize_money(amount, currency: str = "USD") -> Decimal:
    """Round an amount half-up to the currency's minor unit."""
    return to_decimal(amount).quantize(
        minor_unit_exponent(currency), rounding=ROUND_HALF_UP
    )


def format_money(amount, currency: str = "USD") -> str:
    """Render an amount as the decimal string payment gateways expect ("105.00")."""
    return format(quantize_money(amount, currency), "f")


def to_minor_units(amount, currency: str = "USD") -> int:
    """
    Express an amount as a whole number of the currency's minor unit.

    Example:
        to_minor_units(Decimal("105.00"), "USD")  # 10500
        to_minor_units(Decimal("10.005"), "BHD")  # 10005
        to_minor_units(Decimal("1500"), "JPY")    # 1500
    """
    return int(quantize_money(amount, currency).scaleb(minor_unit_places(currency)))


def from_minor_units(minor: int, currency: str = "USD") -> Decimal:
    """Inverse of to_minor_units: 10500 USD -> Decimal("105.00")."""
    return Decimal(int(minor)).scaleb(-minor_unit_places(currency))


@dataclass(frozen=True)
class FeeSplit:
    """Result of a fee computation. All values are in the same currency."""

    base_price: Decimal
    client_fee: Decimal
    client_total: Decimal
    platform_fee: Decimal
    provider_net: Decimal
    currency: str

    @property
    def platform_revenue(self) -> Decimal:
        """Everything the platform keeps: its fee plus the client fee."""
        return self.platform_fee + self.client_fee


class FeeCalculator:
    """
    Pure fee arithmetic. No settings access, no I/O.

    Callers pass the percentages from a settings snapshot so the same
    inputs always produce the same split.
    """

    @staticmethod
    def _percent(value, field_name: str) -> Decimal:
        percent = to_decimal(value, field_name)
        if percent < 0 or percent > HUNDRED:
            raise SettlementValidationError(
                f"{field_name} must be between 0 and 100",
                details={field_name: str(percent)},
            )
        return percent

    @classmethod
    def compute_split(
        cls,
        base_price,
        platform_fee_percent,
        client_fee_percent=None,
        provider_fee_percent=None,
        currency: str = "USD",
    ) -> FeeSplit:
        """
        Compute the three-way split for a base price.

        Args:
            base_price: Agreed price between client and provider
            platform_fee_percent: Platform-wide fee; used for the provider
                side when provider_fee_percent is not given
            client_fee_percent: Fee added on top for the client (default 0)
            provider_fee_percent: Fee withheld from the provider
            currency: ISO-4217 code, decides the rounding unit

        Returns:
            FeeSplit with every amount rounded to the minor unit

        Raises:
            SettlementValidationError: Negative price or percentage out of range
        """
        platform_pct = cls._percent(platform_fee_percent, "platform_fee_percent")
        provider_pct = (
            platform_pct
            if provider_fee_percent is None
            else cls._percent(provider_fee_percent, "provider_fee_percent")
        )
        client_pct = (
            Decimal("0")
            if client_fee_percent is None
            else cls._percent(client_fee_percent, "client_fee_percent")
        )

        base = quantize_money(to_decimal(base_price, "base_price"), currency)
        if base < 0:
            raise SettlementValidationError(
                "base_price must not be negative",
                details={"base_price": str(base)},
            )

        client_fee = quantize_money(base * client_pct / HUNDRED, currency)
        platform_fee = quantize_money(base * provider_pct / HUNDRED, currency)

        return FeeSplit(
            base_price=base,
            client_fee=client_fee,
            client_total=base + client_fee,
            platform_fee=platform_fee,
            provider_net=base - platform_fee,
            currency=currency.upper(),
        )
