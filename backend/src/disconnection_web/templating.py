from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .store import BillingRecord, ConsumerRecord

NOT_AVAILABLE = "N/A"


@dataclass(frozen=True)
class Recipient:
    consumer: ConsumerRecord
    unpaid_billings: tuple[BillingRecord, ...]

    @property
    def outstanding_bill(self) -> BillingRecord | None:
        return self.unpaid_billings[0] if self.unpaid_billings else None


def _amount(recipient: Recipient) -> str:
    bill = recipient.outstanding_bill
    return f"{bill.amount_due:,.2f}" if bill is not None else "0.00"


def _due_date(recipient: Recipient) -> str:
    bill = recipient.outstanding_bill
    return bill.due_date.strftime("%B %d") if bill is not None else NOT_AVAILABLE


def _account_number(recipient: Recipient) -> str:
    account = recipient.consumer.account_number
    return account if account and account.strip() else NOT_AVAILABLE


# Substituted in this order.
PLACEHOLDERS: tuple[tuple[str, Callable[[Recipient], str]], ...] = (
    ("{Name}", lambda recipient: recipient.consumer.first_name),
    ("{Amount}", _amount),
    ("{DueDate}", _due_date),
    ("{AccountNumber}", _account_number),
)


def render_message(template: str, recipient: Recipient) -> str:
    message = template
    for placeholder, resolve in PLACEHOLDERS:
        if placeholder in message:
            message = message.replace(placeholder, resolve(recipient))
    return message
