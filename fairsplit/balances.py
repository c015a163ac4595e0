"""
balances.py - per-member net balances

calculate_user_balances folds a list of expenses into one UserBalance per
roster member:
  - the payer is credited with the full expense amount (total_paid)
  - every split member is charged share * amount (total_owed)
  - net_balance = total_paid - total_owed
    (positive -> should receive, negative -> should pay)

It does not look at currencies; balances_by_currency partitions first.
User ids that are not in the roster are left out of the totals and reported
as StaleReference warnings.
"""

from collections import OrderedDict
from dataclasses import replace
from typing import Dict, Iterable, List, Sequence

from fairsplit.config import get_logger
from fairsplit.models import Expense, Member, StaleReference, UserBalance

logger = get_logger(__name__)


def find_stale_references(expenses: Iterable[Expense], members: Sequence[Member]) -> List[StaleReference]:
    """Every payer/split user id that does not match a roster member."""
    roster = {m.user_id for m in members}
    stale: List[StaleReference] = []
    for e in expenses:
        if e.paid_by not in roster:
            stale.append(StaleReference(expense_id=e.id, user_id=e.paid_by, role="payer"))
        for split in e.split_between:
            if split.user_id not in roster:
                stale.append(StaleReference(expense_id=e.id, user_id=split.user_id, role="split"))
    return stale


def calculate_user_balances(expenses: Sequence[Expense], members: Sequence[Member]) -> List[UserBalance]:
    balances: Dict[str, UserBalance] = OrderedDict()
    for m in members:
        balances[m.user_id] = UserBalance(user_id=m.user_id, user_name=m.display_name)

    for e in expenses:
        payer = balances.get(e.paid_by)
        if payer is not None:
            balances[e.paid_by] = replace(payer, total_paid=payer.total_paid + e.amount)
        for split in e.split_between:
            owner = balances.get(split.user_id)
            if owner is not None:
                balances[split.user_id] = replace(owner, total_owed=owner.total_owed + split.share * e.amount)

    for ref in find_stale_references(expenses, members):
        logger.warning("Expense %s references unknown %s %s; left out of balances", ref.expense_id, ref.role, ref.user_id)

    return list(balances.values())


def members_in_expenses(expenses: Sequence[Expense], members: Sequence[Member]) -> List[Member]:
    """Roster members that pay for or share in at least one of the expenses."""
    involved = set()
    for e in expenses:
        involved.add(e.paid_by)
        involved.update(s.user_id for s in e.split_between)
    return [m for m in members if m.user_id in involved]


def group_by_currency(expenses: Iterable[Expense]) -> Dict[str, List[Expense]]:
    grouped: Dict[str, List[Expense]] = OrderedDict()
    for e in expenses:
        grouped.setdefault(e.currency, []).append(e)
    return grouped


def balances_by_currency(expenses: Sequence[Expense], members: Sequence[Member]) -> Dict[str, List[UserBalance]]:
    """
    Net balances grouped per currency:
        { currency: [UserBalance, ...], ... }
    Each currency only lists the members involved in its expenses.
    """
    result: Dict[str, List[UserBalance]] = OrderedDict()
    for currency, currency_expenses in group_by_currency(expenses).items():
        result[currency] = calculate_user_balances(currency_expenses, members_in_expenses(currency_expenses, members))
    return result
