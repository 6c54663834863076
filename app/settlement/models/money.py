"""
Decimal accessors over integer minor-unit columns.

Amounts are stored as PositiveBigIntegerField counts of the currency's
minor unit (cents for USD, fils for BHD, yen for JPY). The model exposes
each one as a Decimal property of the same name without the _minor
suffix, so callers read and assign Decimals:

    tx.amount = Decimal("10.005")   # BHD
    tx.amount_minor                 # 10005

Django's Model.__init__ assigns concrete fields before properties, so
currency is already set when Transaction(amount=...) runs the setter.
"""

from __future__ import annotations

from decimal import Decimal

from settlement.fees import from_minor_units, to_minor_units


def minor_unit_amount(field_name: str, doc: str = "") -> property:
    """Build a Decimal property reading and writing `field_name` in minor units."""

    def getter(self) -> Decimal | None:
        minor = getattr(self, field_name)
        if minor is None:
            return None
        return from_minor_units(minor, self.currency)

    def setter(self, value) -> None:
        setattr(
            self,
            field_name,
            None if value is None else to_minor_units(value, self.currency),
        )

    return property(getter, setter, doc=doc)
