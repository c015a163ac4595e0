"""
settlement.py - debt netting

calculate_optimal_settlements turns a group's expenses into payment
instructions, one currency at a time:
  - build net balances for the members involved in that currency
  - debtors sorted most negative first, creditors largest first
  - greedily match the current debtor with the current creditor for
    min(remaining debt, remaining credit), moving on from whichever side
    is fully matched (both when they are equal)

The greedy matching is a heuristic: it never needs more than
(debtors + creditors - 1) payments per currency, but it is not guaranteed to
find the smallest possible number of payments for every debt graph.

Net balances are rounded round-half-even to the currency's minor unit
before netting, so the emitted amounts are always representable money.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import List, Sequence, Tuple

from fairsplit.balances import calculate_user_balances, group_by_currency, members_in_expenses
from fairsplit.config import get_logger
from fairsplit.models import Expense, Member, SettlementTransaction, UserBalance
from fairsplit.money import money_tolerance, to_decimal

logger = get_logger(__name__)


@dataclass
class SettlementApplication:
    """Outcome of applying a recorded payment to a group's expenses."""
    expenses: List[Expense]
    updated_expense_ids: List[str] = field(default_factory=list)
    unapplied_amount: float = 0.0


def settle_balances(balances: Sequence[UserBalance], currency: str) -> List[SettlementTransaction]:
    """Greedy two-pointer netting over balances that are all in one currency."""
    rounded: List[Tuple[UserBalance, Decimal]] = [(b, to_decimal(b.net_balance, currency)) for b in balances]
    debtors = sorted([(b, -net) for b, net in rounded if net < 0], key=lambda x: x[1], reverse=True)
    creditors = sorted([(b, net) for b, net in rounded if net > 0], key=lambda x: x[1], reverse=True)

    transactions: List[SettlementTransaction] = []
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor, debt = debtors[i]
        creditor, credit = creditors[j]
        amount = min(debt, credit)
        if amount > 0:
            transactions.append(SettlementTransaction(
                from_user_id=debtor.user_id,
                to_user_id=creditor.user_id,
                amount=float(amount),
                currency=currency,
                from_user_name=debtor.user_name,
                to_user_name=creditor.user_name,
            ))
        debt -= amount
        credit -= amount
        debtors[i] = (debtor, debt)
        creditors[j] = (creditor, credit)
        if debt <= 0:
            i += 1
        if credit <= 0:
            j += 1
    return transactions


def calculate_optimal_settlements(expenses: Sequence[Expense], members: Sequence[Member]) -> List[SettlementTransaction]:
    transactions: List[SettlementTransaction] = []
    for currency, currency_expenses in group_by_currency(expenses).items():
        involved = members_in_expenses(currency_expenses, members)
        balances = calculate_user_balances(currency_expenses, involved)
        transactions.extend(settle_balances(balances, currency))
    return transactions


def apply_settlement(
    expenses: Sequence[Expense],
    payer_id: str,
    payee_id: str,
    amount: float,
    currency: str,
) -> SettlementApplication:
    """
    Mark the payer's splits as paid on expenses the payee paid for, oldest
    expense first, for as long as the payment covers the full owed amount of
    the next split. Returns new Expense objects; the inputs are untouched.
    """
    if payer_id == payee_id:
        raise ValueError("A settlement needs two different users")
    if amount <= 0:
        raise ValueError(f"Settlement amount must be positive, got {amount}")

    tolerance = money_tolerance(currency)
    remaining = amount
    updated = list(expenses)
    updated_ids: List[str] = []

    # oldest first; expenses without a date go last
    order = sorted(range(len(updated)), key=lambda k: (not updated[k].date, updated[k].date))
    for k in order:
        e = updated[k]
        if remaining <= tolerance:
            break
        if e.paid_by != payee_id or e.currency != currency:
            continue
        new_splits = []
        changed = False
        for split in e.split_between:
            owed = split.share * e.amount
            if not split.is_paid and split.user_id == payer_id and owed > 0 and remaining >= owed - tolerance:
                remaining -= owed
                new_splits.append(replace(split, is_paid=True))
                changed = True
            else:
                new_splits.append(split)
        if changed:
            updated[k] = e.with_splits(new_splits)
            updated_ids.append(e.id)

    unapplied = max(remaining, 0.0)
    if unapplied > tolerance:
        logger.info("Settlement %s -> %s left %.2f %s not matched to open splits", payer_id, payee_id, unapplied, currency)
    return SettlementApplication(expenses=updated, updated_expense_ids=updated_ids, unapplied_amount=unapplied if unapplied > tolerance else 0.0)
