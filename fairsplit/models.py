"""
models.py - Data model definitions

Dataclasses shared by the split engine, the balance/settlement code, the
ledger and the exporter. Records are converted to/from the camelCase dicts
used by the document store (and the local JSON file) with to_dict/from_dict.

from_dict is the boundary: it validates once and raises InvalidRecordError
for anything it cannot parse, so the algorithms never need to default or
cast values themselves.
"""

import datetime
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from fairsplit.errors import InvalidRecordError
from fairsplit.money import currency_decimals


class SplitType(Enum):
    EQUAL = "Equal Split"
    PERCENTAGE = "Percentage"
    CUSTOM_AMOUNT = "Custom Amount"

    @classmethod
    def parse(cls, value: Any) -> "SplitType":
        """Accept a SplitType, its name ("EQUAL") or its stored label ("Equal Split")."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        raise InvalidRecordError(f"Unknown split type: {value!r}")


class ExpenseCategory(Enum):
    FOOD = "FOOD"
    TRANSPORTATION = "TRANSPORTATION"
    ACCOMMODATION = "ACCOMMODATION"
    ENTERTAINMENT = "ENTERTAINMENT"
    SHOPPING = "SHOPPING"
    UTILITIES = "UTILITIES"
    RENT = "RENT"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: Any) -> "ExpenseCategory":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        if not text:
            return cls.OTHER
        try:
            return cls(text)
        except ValueError:
            raise InvalidRecordError(f"Unknown expense category: {value!r}")


def _require_str(d: Dict, key: str) -> str:
    value = d.get(key)
    if value is not None and str(value).strip():
        return str(value).strip()
    raise InvalidRecordError(f"Missing required field '{key}' in {d!r}")


def _number(value: Any, key: str) -> float:
    if isinstance(value, bool):
        raise InvalidRecordError(f"Field '{key}' must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidRecordError(f"Field '{key}' must be a number, got {value!r}")


def _optional_number(d: Dict, key: str) -> Optional[float]:
    value = d.get(key)
    if value is None or value == "":
        return None
    return _number(value, key)


def _bool(value: Any, key: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise InvalidRecordError(f"Field '{key}' must be true or false, got {value!r}")


def _iso_date(value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    try:
        return datetime.date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        raise InvalidRecordError(f"Invalid date {value!r}, expected YYYY-MM-DD")


@dataclass(frozen=True)
class Member:
    """
    A group member as seen by the split engine.

    percentage (0-100) is only read by the PERCENTAGE strategy and
    custom_amount only by the CUSTOM_AMOUNT strategy.
    """
    user_id: str
    display_name: str = ""
    percentage: Optional[float] = None
    custom_amount: Optional[float] = None

    def to_dict(self) -> Dict:
        d: Dict[str, Any] = {"userId": self.user_id, "displayName": self.display_name}
        if self.percentage is not None:
            d["percentage"] = self.percentage
        if self.custom_amount is not None:
            d["customAmount"] = self.custom_amount
        return d

    @staticmethod
    def from_dict(d: Dict) -> "Member":
        user_id = _require_str(d, "userId")
        return Member(
            user_id=user_id,
            display_name=str(d.get("displayName") or d.get("name") or user_id).strip(),
            percentage=_optional_number(d, "percentage"),
            custom_amount=_optional_number(d, "customAmount"),
        )


@dataclass(frozen=True)
class ExpenseSplit:
    """One member's fractional share of an expense."""
    user_id: str
    share: float
    is_paid: bool = False
    user_name: str = ""

    def to_dict(self) -> Dict:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "share": self.share,
            "isPaid": self.is_paid,
        }

    @staticmethod
    def from_dict(d: Dict) -> "ExpenseSplit":
        share = _number(d.get("share"), "share")
        if share < 0 or share > 1:
            raise InvalidRecordError(f"Split share must be within [0, 1], got {share}")
        return ExpenseSplit(
            user_id=_require_str(d, "userId"),
            share=share,
            is_paid=_bool(d.get("isPaid"), "isPaid"),
            user_name=str(d.get("userName") or "").strip(),
        )


@dataclass(frozen=True)
class Expense:
    """
    A stored expense. Never mutated: editing an expense builds a new one
    (see dataclasses.replace) with a freshly computed split.
    """
    id: str
    amount: float
    currency: str
    paid_by: str
    split_between: List[ExpenseSplit] = field(default_factory=list)
    date: str = ""  # ISO "YYYY-MM-DD"
    group_id: str = ""
    description: str = ""
    paid_by_name: str = ""
    category: ExpenseCategory = ExpenseCategory.OTHER
    notes: str = ""

    def with_splits(self, splits: List[ExpenseSplit]) -> "Expense":
        return replace(self, split_between=list(splits))

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "groupId": self.group_id,
            "description": self.description,
            "amount": self.amount,
            "currency": self.currency,
            "date": self.date,
            "paidBy": self.paid_by,
            "paidByName": self.paid_by_name,
            "splitBetween": [s.to_dict() for s in self.split_between],
            "category": self.category.value,
            "notes": self.notes,
        }

    @staticmethod
    def from_dict(d: Dict) -> "Expense":
        splits = d.get("splitBetween") or []
        if not isinstance(splits, list):
            raise InvalidRecordError(f"splitBetween must be a list, got {type(splits).__name__}")
        return Expense(
            id=_require_str(d, "id"),
            amount=_number(d.get("amount"), "amount"),
            currency=_require_str(d, "currency").upper(),
            paid_by=_require_str(d, "paidBy"),
            split_between=[ExpenseSplit.from_dict(s) for s in splits],
            date=_iso_date(d.get("date")),
            group_id=str(d.get("groupId") or ""),
            description=str(d.get("description") or ""),
            paid_by_name=str(d.get("paidByName") or ""),
            category=ExpenseCategory.parse(d.get("category")),
            notes=str(d.get("notes") or ""),
        )


@dataclass(frozen=True)
class SplitResult:
    splits: List[ExpenseSplit]
    total_amount: float
    split_type: SplitType
    currency: str

    def to_dict(self) -> Dict:
        return {
            "splits": [s.to_dict() for s in self.splits],
            "totalAmount": self.total_amount,
            "splitType": self.split_type.value,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class SplitStatistics:
    participant_count: int
    average_share: float
    min_share: float
    max_share: float
    total_amount: float


@dataclass(frozen=True)
class UserBalance:
    """Derived per-member totals; recomputed on demand, never stored."""
    user_id: str
    user_name: str
    total_paid: float = 0.0
    total_owed: float = 0.0

    @property
    def net_balance(self) -> float:
        # positive -> should receive; negative -> should pay
        return self.total_paid - self.total_owed

    def to_dict(self) -> Dict:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "totalPaid": self.total_paid,
            "totalOwed": self.total_owed,
            "netBalance": self.net_balance,
        }


@dataclass(frozen=True)
class SettlementTransaction:
    """A recommended payment; recording it is up to the ledger."""
    from_user_id: str
    to_user_id: str
    amount: float
    currency: str
    from_user_name: str = ""
    to_user_name: str = ""

    def describe(self) -> str:
        payer = self.from_user_name or self.from_user_id
        payee = self.to_user_name or self.to_user_id
        decimals = currency_decimals(self.currency)
        return f"{payer} pays {payee} {self.amount:.{decimals}f} {self.currency}"

    def to_dict(self) -> Dict:
        return {
            "fromUserId": self.from_user_id,
            "fromUserName": self.from_user_name,
            "toUserId": self.to_user_id,
            "toUserName": self.to_user_name,
            "amount": self.amount,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class StaleReference:
    """An expense that points at a user id missing from the roster."""
    expense_id: str
    user_id: str
    role: str  # "payer" or "split"
