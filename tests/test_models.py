import pytest
from fairsplit.errors import InvalidRecordError, Result
from fairsplit.models import Expense, ExpenseCategory, ExpenseSplit, Member, SettlementTransaction, SplitType, UserBalance
from fairsplit.money import round_money


def test_split_type_parse():
    assert SplitType.parse("Equal Split") is SplitType.EQUAL
    assert SplitType.parse("percentage") is SplitType.PERCENTAGE
    assert SplitType.parse("CUSTOM_AMOUNT") is SplitType.CUSTOM_AMOUNT
    with pytest.raises(InvalidRecordError):
        SplitType.parse("Shares")


def test_member_from_dict():
    m = Member.from_dict({"userId": "u1", "name": "Ana", "percentage": "40"})
    assert m == Member("u1", "Ana", percentage=40.0)
    assert Member.from_dict({"userId": "u2"}).display_name == "u2"
    with pytest.raises(InvalidRecordError):
        Member.from_dict({"userId": "u3", "customAmount": "ten"})


def test_expense_from_dict_validates():
    d = {
        "id": "e1",
        "amount": "12.5",
        "currency": "php",
        "paidBy": "u1",
        "splitBetween": [{"userId": "u1", "share": 0.5}, {"userId": "u2", "share": 0.5, "isPaid": True}],
        "date": "2026-02-03T10:00:00",
        "category": "food",
    }
    e = Expense.from_dict(d)
    assert e.amount == 12.5
    assert e.currency == "PHP"
    assert e.date == "2026-02-03"
    assert e.category is ExpenseCategory.FOOD
    assert e.split_between[1].is_paid is True
    assert Expense.from_dict(e.to_dict()) == e

    with pytest.raises(InvalidRecordError):
        Expense.from_dict(dict(d, paidBy=""))
    with pytest.raises(InvalidRecordError):
        Expense.from_dict(dict(d, splitBetween=[{"userId": "u1", "share": 1.5}]))
    with pytest.raises(InvalidRecordError):
        Expense.from_dict(dict(d, date="03/02/2026"))


def test_split_is_paid_parsing():
    split = {"userId": "u1", "share": 1.0}
    assert ExpenseSplit.from_dict(split).is_paid is False
    assert ExpenseSplit.from_dict(dict(split, isPaid="false")).is_paid is False
    assert ExpenseSplit.from_dict(dict(split, isPaid=" TRUE ")).is_paid is True
    assert ExpenseSplit.from_dict(dict(split, isPaid=False)).is_paid is False
    for bad in ("yes", 1, "0"):
        with pytest.raises(InvalidRecordError):
            ExpenseSplit.from_dict(dict(split, isPaid=bad))


def test_user_balance_net():
    b = UserBalance("u1", "Ana", total_paid=50.0, total_owed=80.0)
    assert b.net_balance == -30.0
    assert b.to_dict()["netBalance"] == -30.0


def test_settlement_describe_uses_currency_decimals():
    t = SettlementTransaction("u1", "u2", 1500.0, "JPY", "Ana", "Ben")
    assert t.describe() == "Ana pays Ben 1500 JPY"


def test_round_money_half_even():
    assert round_money(2.675, "EUR") == 2.68
    assert round_money(0.125, "EUR") == 0.12
    assert round_money(10.5, "JPY") == 10.0
    assert round_money(1.0005, "BHD") == 1.0


def test_result_outcomes():
    ok = Result.ok(3, warnings=["careful"])
    assert ok.is_success() and ok.data == 3 and ok.warnings == ["careful"]
    err = Result.error("nope")
    assert not err.is_success() and err.message == "nope" and err.issues == []
