from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import ExchangeRate
from money import Money

logger = logging.getLogger(__name__)

RATE_SCALE = 1_000_000


@dataclass(frozen=True)
class RateQuote:
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    # True when no rate row existed and 1:1 was assumed
    is_fallback: bool = False


class ExchangeRateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def rate_for(self, on_date: date, from_currency: str, to_currency: str) -> RateQuote:
        base = from_currency.upper()
        quote = to_currency.upper()
        if base == quote:
            return RateQuote(base=base, quote=quote, rate=Decimal("1"), rate_date=on_date)

        rate_micros = self.session.scalar(
            select(ExchangeRate.rate_micros).where(
                ExchangeRate.date == on_date,
                ExchangeRate.from_currency == base,
                ExchangeRate.to_currency == quote,
            )
        )
        if rate_micros is None:
            logger.warning(
                f"fx_rate_missing: date={on_date.isoformat()} from={base} to={quote} "
                "fallback_rate=1"
            )
            return RateQuote(
                base=base,
                quote=quote,
                rate=Decimal("1"),
                rate_date=on_date,
                is_fallback=True,
            )
        return RateQuote(
            base=base,
            quote=quote,
            rate=self.micros_to_rate(rate_micros),
            rate_date=on_date,
        )

    def convert(self, money: Money, on_date: date, to_currency: str) -> Money:
        return money.convert(self.rate_for(on_date, money.currency, to_currency))

    @staticmethod
    def rate_to_micros(rate: Decimal) -> int:
        return int(
            (rate * Decimal(RATE_SCALE)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        )

    @staticmethod
    def micros_to_rate(rate_micros: int) -> Decimal:
        return Decimal(rate_micros) / Decimal(RATE_SCALE)
