from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from models import Account, TransactionDirection


CURRENCY_SYMBOLS = {
    "USD": "$",
    "CAD": "$",
    "AUD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CHF": "CHF ",
    "KES": "KSh ",
}

# ISO 4217 minor units that differ from the usual two.
MINOR_UNITS = {"JPY": 0, "KRW": 0, "ISK": 0, "BHD": 3, "KWD": 3, "OMR": 3}


@dataclass(frozen=True)
class CurrencyContext:
    code: str
    symbol: str
    minor_units: int = 2

    @classmethod
    def for_code(cls, code: str) -> "CurrencyContext":
        code = code.upper()
        return cls(
            code=code,
            symbol=CURRENCY_SYMBOLS.get(code, f"{code} "),
            minor_units=MINOR_UNITS.get(code, 2),
        )

    @classmethod
    def for_account(cls, account: Account) -> "CurrencyContext":
        return cls.for_code(account.currency_code)

    def quantize(self, amount: Decimal) -> Decimal:
        exponent = Decimal(1).scaleb(-self.minor_units)
        return amount.quantize(exponent, rounding=ROUND_HALF_UP)

    def format_amount(self, amount: Optional[Decimal]) -> str:
        if amount is None:
            amount = Decimal("0")
        value = self.quantize(amount)
        sign = "-" if value < 0 else ""
        return f"{sign}{self.symbol}{abs(value):,.{self.minor_units}f}"

    def format_signed(self, amount: Decimal, direction: TransactionDirection) -> str:
        prefix = "+" if direction == TransactionDirection.income else "-"
        return prefix + self.format_amount(abs(amount))
