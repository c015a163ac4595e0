import json

import gspread
import pytest
from fairsplit.errors import ExpenseNotFoundError, SplitIssueKind
from fairsplit.ledger import GoogleSheetsBackend, GroupLedger
from fairsplit.models import Member, SplitType


@pytest.fixture
def ledger(tmp_path, monkeypatch):
    monkeypatch.delenv("GOOGLE_SHEET_ID", raising=False)
    monkeypatch.delenv("FAIRSPLIT_DEFAULT_CURRENCY", raising=False)
    led = GroupLedger(group_id="trip", data_file=str(tmp_path / "ledger.json"))
    led.add_member("A", "Alice")
    led.add_member("B", "Bob")
    led.add_member("C", "Charlie")
    return led


def test_storage_status_without_sheets(ledger):
    backend, message = ledger.storage_status()
    assert backend == "local_json"
    assert "GOOGLE_SHEET_ID is not set" in message


def test_add_member_is_idempotent(ledger):
    assert ledger.add_member("A", "Alice again") is False
    assert [m.user_id for m in ledger.get_members()] == ["A", "B", "C"]


def test_add_expense_equal_split(ledger):
    result = ledger.add_expense(90.0, "A", description="Dinner", date="2026-03-01")
    assert result.is_success()
    exp = result.data
    assert exp.id == "1"
    assert exp.currency == "EUR"
    assert exp.paid_by_name == "Alice"
    assert [s.user_id for s in exp.split_between] == ["A", "B", "C"]
    assert ledger.expenses[-1] is exp


def test_add_expense_rejects_unknown_payer(ledger):
    result = ledger.add_expense(10.0, "Z")
    assert not result.is_success()
    assert result.issues[0].kind is SplitIssueKind.UNKNOWN_MEMBER
    assert ledger.expenses == []


def test_add_expense_rejects_bad_percentages(ledger):
    participants = [Member("A", percentage=70), Member("B", percentage=10)]
    result = ledger.add_expense(100.0, "A", SplitType.PERCENTAGE, participants)
    assert not result.is_success()
    assert result.issues[0].kind is SplitIssueKind.INCONSISTENT_PERCENTAGES
    assert ledger.expenses == []


def test_add_expense_custom_amounts(ledger):
    participants = [Member("A", custom_amount=25.0), "B", "C"]
    result = ledger.add_expense(100.0, "A", "Custom Amount", participants, currency="usd")
    assert result.is_success()
    shares = [s.share for s in result.data.split_between]
    assert shares == pytest.approx([0.25, 0.375, 0.375])
    assert result.data.currency == "USD"
    assert result.data.split_between[1].user_name == "Bob"


def test_balances_and_suggestions(ledger):
    ledger.add_expense(60.0, "A")
    ledger.add_expense(30.0, "B")
    eur = {b.user_id: b.net_balance for b in ledger.balances()["EUR"]}
    assert eur == pytest.approx({"A": 30.0, "B": 0.0, "C": -30.0})
    suggestions = ledger.settle_suggestions()
    assert [t.describe() for t in suggestions] == ["Charlie pays Alice 30.00 EUR"]


def test_edit_expense_keeps_proportions(ledger):
    participants = [Member("A", percentage=50), Member("B", percentage=50)]
    exp = ledger.add_expense(40.0, "A", SplitType.PERCENTAGE, participants).data
    result = ledger.edit_expense(exp.id, amount=80.0, description="Bigger dinner")
    assert result.is_success()
    edited = ledger.get_expense(exp.id)
    assert edited.amount == 80.0
    assert edited.description == "Bigger dinner"
    assert [s.share for s in edited.split_between] == pytest.approx([0.5, 0.5])
    # the stored expense was replaced, not mutated
    assert exp.amount == 40.0


def test_edit_expense_new_participants(ledger):
    exp = ledger.add_expense(90.0, "A").data
    result = ledger.edit_expense(exp.id, participants=["A", "B"])
    assert result.is_success()
    assert [s.share for s in result.data.split_between] == [0.5, 0.5]


def test_edit_unknown_expense_raises(ledger):
    with pytest.raises(ExpenseNotFoundError):
        ledger.edit_expense("99", amount=1.0)


def test_delete_expense(ledger):
    exp = ledger.add_expense(10.0, "A").data
    assert ledger.delete_expense(exp.id) is True
    assert ledger.delete_expense(exp.id) is False
    # ids are not reused after delete
    assert ledger.add_expense(10.0, "A").data.id == "2"


def test_list_expenses_by_month(ledger):
    ledger.add_expense(10.0, "A", date="2026-01-15")
    ledger.add_expense(20.0, "A", date="2026-02-01")
    assert [e.amount for e in ledger.list_expenses(year=2026, month=2)] == [20.0]
    assert len(ledger.list_expenses()) == 2


def test_record_settlement(ledger):
    ledger.add_expense(90.0, "A")
    result = ledger.record_settlement("B", "A", 30.0)
    assert result.is_success()
    assert result.data.updated_expense_ids == ["1"]
    split_b = [s for s in ledger.expenses[0].split_between if s.user_id == "B"][0]
    assert split_b.is_paid is True
    assert ledger.settlements[0]["payerId"] == "B"
    assert ledger.settlements[0]["status"] == "completed"


def test_recorded_settlement_reduces_suggestions(ledger):
    ledger.add_expense(90.0, "A")
    assert len(ledger.settle_suggestions()) == 2
    ledger.record_settlement("B", "A", 30.0)
    eur = {b.user_id: b.net_balance for b in ledger.balances()["EUR"]}
    assert eur == pytest.approx({"A": 30.0, "B": 0.0, "C": -30.0})
    assert [t.describe() for t in ledger.settle_suggestions()] == ["Charlie pays Alice 30.00 EUR"]


def test_recorded_settlements_counted_after_reload(ledger):
    ledger.add_expense(90.0, "A")
    ledger.record_settlement("B", "A", 30.0)
    ledger.record_settlement("C", "A", 30.0)
    reloaded = GroupLedger(data_file=ledger.data_file)
    assert reloaded.settle_suggestions() == []


def test_partial_settlement_leaves_remainder(ledger):
    ledger.add_expense(90.0, "A")
    ledger.record_settlement("C", "A", 10.0)
    suggestions = {(t.from_user_id, t.to_user_id): t.amount for t in ledger.settle_suggestions()}
    assert suggestions == pytest.approx({("B", "A"): 30.0, ("C", "A"): 20.0})
    # partial payment does not mark the split paid
    split_c = [s for s in ledger.expenses[0].split_between if s.user_id == "C"][0]
    assert split_c.is_paid is False


def test_edit_expense_keeps_paid_flags(ledger):
    exp = ledger.add_expense(90.0, "A").data
    ledger.record_settlement("B", "A", 30.0)
    result = ledger.edit_expense(exp.id, amount=120.0)
    assert result.is_success()
    paid = {s.user_id: s.is_paid for s in ledger.get_expense(exp.id).split_between}
    assert paid == {"A": False, "B": True, "C": False}


def test_record_settlement_rejects_unknown_member(ledger):
    result = ledger.record_settlement("Z", "A", 5.0)
    assert not result.is_success()
    assert result.issues[0].user_id == "Z"


def test_state_survives_reload(ledger):
    ledger.add_expense(90.0, "A", date="2026-03-01")
    ledger.record_settlement("C", "A", 30.0)
    reloaded = GroupLedger(data_file=ledger.data_file)
    assert reloaded.group_id == "trip"
    assert [m.display_name for m in reloaded.members] == ["Alice", "Bob", "Charlie"]
    assert reloaded.expenses == ledger.expenses
    assert len(reloaded.settlements) == 1
    assert reloaded.add_expense(5.0, "B").data.id == "2"


def test_invalid_records_are_skipped_on_load(tmp_path, monkeypatch):
    monkeypatch.delenv("GOOGLE_SHEET_ID", raising=False)
    path = tmp_path / "ledger.json"
    path.write_text(json.dumps({
        "groupId": "g",
        "next_id": 3,
        "members": [{"userId": "A", "displayName": "Alice"}, {"displayName": "nobody"}],
        "expenses": [
            {"id": "1", "amount": 10, "currency": "EUR", "paidBy": "A",
             "splitBetween": [{"userId": "A", "share": 1.0}], "date": "2026-01-01"},
            {"id": "2", "amount": "lots", "currency": "EUR", "paidBy": "A"},
        ],
    }), encoding="utf-8")
    led = GroupLedger(data_file=str(path))
    assert [m.user_id for m in led.members] == ["A"]
    assert [e.id for e in led.expenses] == ["1"]


def test_remove_member_leaves_stale_references(ledger):
    ledger.add_expense(90.0, "A")
    assert ledger.remove_member("C") is True
    refs = ledger.stale_references()
    assert [(r.user_id, r.role) for r in refs] == [("C", "split")]
    assert [b.user_id for b in ledger.balances()["EUR"]] == ["A", "B"]


class FakeWorksheet:
    def __init__(self):
        self.values = []
        self.row_count = 10
        self.col_count = 4

    def row_values(self, n):
        return self.values[n - 1] if len(self.values) >= n else []

    def resize(self, rows, cols):
        self.row_count, self.col_count = rows, cols

    def update(self, range_name, values, value_input_option):
        for i, row in enumerate(values):
            if i < len(self.values):
                self.values[i] = list(row)
            else:
                self.values.append(list(row))

    def clear(self):
        self.values = []

    def get_all_values(self):
        return [list(r) for r in self.values]


class FakeSpreadsheet:
    def __init__(self):
        self.sheets = {}

    def worksheet(self, title):
        if title not in self.sheets:
            raise gspread.exceptions.WorksheetNotFound(title)
        return self.sheets[title]

    def add_worksheet(self, title, rows, cols):
        self.sheets[title] = FakeWorksheet()
        return self.sheets[title]


def test_google_sheets_round_trip(tmp_path):
    backend = GoogleSheetsBackend(sheet_id="")
    assert backend.available is False
    backend.attach(FakeSpreadsheet())
    assert backend.available is True

    led = GroupLedger(group_id="sheet", data_file=str(tmp_path / "unused.json"), sheets_backend=backend)
    led.add_member("A", "Alice")
    led.add_member("B", "Bob")
    led.add_expense(50.0, "B", date="2026-04-01")
    assert led.storage_status()[0] == "google_sheets"
    assert not (tmp_path / "unused.json").exists()

    reloaded = GroupLedger(data_file=str(tmp_path / "unused.json"), sheets_backend=backend)
    assert [m.user_id for m in reloaded.members] == ["A", "B"]
    assert reloaded.expenses == led.expenses
    assert reloaded.group_id == "sheet"
