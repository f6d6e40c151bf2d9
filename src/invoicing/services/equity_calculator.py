"""Settlement split: how much of an invoice's service amount is paid in equity."""
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from src.invoicing.storage.invoice_repository import Company, Contractor, InvoiceRepository

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementSplit:
    equity_cents: int
    equity_options: int
    equity_percentage: int


NO_EQUITY = SettlementSplit(equity_cents=0, equity_options=0, equity_percentage=0)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _parse_price(value: str | None) -> Decimal | None:
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    return price if price > 0 else None


class InvoiceEquityCalculator:
    """
    Splits a service amount into cash and equity for one contractor and year.

    calculate() returns None when the contractor elected equity but no share
    price is known for the year; callers must treat that as fatal.
    """

    def __init__(self, repository: InvoiceRepository):
        self.repository = repository

    def calculate(
        self,
        contractor: Contractor,
        company: Company,
        service_amount_cents: int,
        invoice_year: int,
    ) -> SettlementSplit | None:
        if not company.equity_enabled:
            return NO_EQUITY

        equity_percentage = self.repository.get_equity_percentage(contractor.id, invoice_year) or 0
        equity_cents = _round_half_up(Decimal(service_amount_cents) * equity_percentage / 100)
        equity_options = 0

        if equity_percentage != 0:
            grant = self.repository.get_equity_grant(contractor.id, invoice_year)
            share_price = _parse_price(grant.share_price_usd if grant else company.fmv_per_share_usd)
            if share_price is None:
                log.error(
                    "No share price for contractor %s in %d, cannot split %d cents",
                    contractor.id, invoice_year, service_amount_cents,
                )
                return None
            equity_options = _round_half_up(Decimal(equity_cents) / (share_price * 100))

        if equity_options <= 0:
            return NO_EQUITY
        return SettlementSplit(
            equity_cents=equity_cents,
            equity_options=equity_options,
            equity_percentage=equity_percentage,
        )
