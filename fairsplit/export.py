"""
export.py - tabular export of a group's expenses, balances and settlements

Builds pandas DataFrames and renders them as XLSX (one sheet per table,
written with openpyxl) or as a single CSV document.

Columns:
  - expenses: id, date, description, amount, currency, paid_by, split_between,
    category, notes
  - balances: currency, user_id, user_name, total_paid, total_owed, net_balance
  - settlements: currency, from, to, amount
Amounts are rounded to each currency's minor unit.
"""

import datetime
from io import BytesIO, StringIO
from typing import Dict, List, Optional, Sequence

import pandas as pd

from fairsplit.balances import balances_by_currency
from fairsplit.models import Expense, Member, SettlementTransaction
from fairsplit.money import round_money
from fairsplit.settlement import calculate_optimal_settlements

DATE_RANGES = ("All Time", "Last 30 Days", "Last 3 Months", "Last 6 Months", "This Year")

EXPENSE_COLUMNS = ["id", "date", "description", "amount", "currency", "paid_by", "split_between", "category", "notes"]
BALANCE_COLUMNS = ["currency", "user_id", "user_name", "total_paid", "total_owed", "net_balance"]
SETTLEMENT_COLUMNS = ["currency", "from", "to", "amount"]


def _months_back(today: datetime.date, months: int) -> datetime.date:
    month_index = today.year * 12 + (today.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    # clamp the day for shorter months (e.g. 31 May -> 28/29 Feb)
    for day in range(today.day, 0, -1):
        try:
            return datetime.date(year, month, day)
        except ValueError:
            continue
    return datetime.date(year, month, 1)


def date_range_start(date_range: str, today: Optional[datetime.date] = None) -> Optional[datetime.date]:
    """First day included by a named range; None for "All Time"."""
    today = today or datetime.date.today()
    if date_range == "All Time":
        return None
    if date_range == "Last 30 Days":
        return today - datetime.timedelta(days=30)
    if date_range == "Last 3 Months":
        return _months_back(today, 3)
    if date_range == "Last 6 Months":
        return _months_back(today, 6)
    if date_range == "This Year":
        return datetime.date(today.year, 1, 1)
    raise ValueError(f"Unknown date range {date_range!r}, expected one of {DATE_RANGES}")


def filter_expenses_by_date_range(
    expenses: Sequence[Expense],
    date_range: str = "All Time",
    today: Optional[datetime.date] = None,
) -> List[Expense]:
    """Expenses dated on or after the start of the range (undated ones only for "All Time")."""
    start = date_range_start(date_range, today)
    if start is None:
        return list(expenses)
    return [e for e in expenses if e.date and datetime.date.fromisoformat(e.date) >= start]


def expenses_frame(expenses: Sequence[Expense], members: Sequence[Member] = ()) -> pd.DataFrame:
    names: Dict[str, str] = {m.user_id: m.display_name for m in members}
    rows = []
    for e in expenses:
        rows.append({
            "id": e.id,
            "date": e.date,
            "description": e.description,
            "amount": round_money(e.amount, e.currency),
            "currency": e.currency,
            "paid_by": e.paid_by_name or names.get(e.paid_by, e.paid_by),
            # split member names joined for display
            "split_between": "; ".join(s.user_name or names.get(s.user_id, s.user_id) for s in e.split_between),
            "category": e.category.value,
            "notes": e.notes,
        })
    return pd.DataFrame(rows, columns=EXPENSE_COLUMNS)


def balances_frame(expenses: Sequence[Expense], members: Sequence[Member]) -> pd.DataFrame:
    rows = []
    for currency, balances in balances_by_currency(expenses, members).items():
        for b in balances:
            rows.append({
                "currency": currency,
                "user_id": b.user_id,
                "user_name": b.user_name,
                "total_paid": round_money(b.total_paid, currency),
                "total_owed": round_money(b.total_owed, currency),
                "net_balance": round_money(b.net_balance, currency),
            })
    return pd.DataFrame(rows, columns=BALANCE_COLUMNS)


def settlements_frame(transactions: Sequence[SettlementTransaction]) -> pd.DataFrame:
    rows = [{
        "currency": t.currency,
        "from": t.from_user_name or t.from_user_id,
        "to": t.to_user_name or t.to_user_id,
        "amount": t.amount,
    } for t in transactions]
    return pd.DataFrame(rows, columns=SETTLEMENT_COLUMNS)


def export_xlsx(
    expenses: Sequence[Expense],
    members: Sequence[Member],
    include_settlements: bool = True,
    date_range: str = "All Time",
    today: Optional[datetime.date] = None,
) -> bytes:
    """
    Workbook with sheets "expenses", "totals_by_currency" and, when
    include_settlements is set, "balances" and "settlements".
    Balances and settlements always cover the full history, not just the range.
    """
    df = expenses_frame(filter_expenses_by_date_range(expenses, date_range, today), members)
    totals = df.groupby("currency")["amount"].sum().reset_index()

    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="expenses")
        totals.to_excel(writer, index=False, sheet_name="totals_by_currency")
        if include_settlements:
            balances_frame(expenses, members).to_excel(writer, index=False, sheet_name="balances")
            settlements_frame(calculate_optimal_settlements(expenses, members)).to_excel(
                writer, index=False, sheet_name="settlements"
            )
    # context manager already saved into buffer
    buffer.seek(0)
    return buffer.getvalue()


def export_csv(
    expenses: Sequence[Expense],
    members: Sequence[Member],
    include_settlements: bool = True,
    date_range: str = "All Time",
    today: Optional[datetime.date] = None,
) -> str:
    """Expenses table, followed by a "Settlements" section when requested."""
    out = StringIO()
    expenses_frame(filter_expenses_by_date_range(expenses, date_range, today), members).to_csv(out, index=False)
    if include_settlements:
        transactions = calculate_optimal_settlements(expenses, members)
        if transactions:
            out.write("\nSettlements\n")
            settlements_frame(transactions).to_csv(out, index=False)
    return out.getvalue()
