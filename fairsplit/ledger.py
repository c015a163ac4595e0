"""
ledger.py - group ledger and persistence

Responsibilities:
 - keep one group's members, expenses and recorded settlements in memory
 - persist/load them to Google Sheets (preferred) or a local JSON file
 - run every new or edited expense through the split engine before storing it
 - expose balances (per currency), settle-up suggestions and settlement
   recording to the caller

The split/balance/settlement maths lives in splitter.py, balances.py and
settlement.py; this module only feeds them stored data and saves results.
"""

import datetime
import json
import os
import shutil
import tempfile
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import gspread
import google.auth
from google.oauth2.service_account import Credentials

from fairsplit import config
from fairsplit.balances import balances_by_currency, find_stale_references
from fairsplit.errors import (
    ExpenseNotFoundError,
    InvalidRecordError,
    MemberNotFoundError,
    Result,
    SplitIssue,
    SplitIssueKind,
)
from fairsplit.models import (
    Expense,
    ExpenseCategory,
    Member,
    SettlementTransaction,
    SplitType,
    StaleReference,
    UserBalance,
)
from fairsplit.settlement import apply_settlement, settle_balances
from fairsplit.splitter import prepare_split

logger = config.get_logger(__name__)

Participant = Union[str, Member]


class GoogleSheetsBackend:
    """
    Google Sheets persistence backend.

    Data layout (one spreadsheet per group):
      - worksheet "members": userId, displayName
      - worksheet "expenses": one row per expense, splits as JSON
      - worksheet "settlements": recorded payments
      - worksheet "meta": key/value metadata (groupId, next_id)
    """

    MEMBERS_SHEET_NAME = "members"
    EXPENSES_SHEET_NAME = "expenses"
    SETTLEMENTS_SHEET_NAME = "settlements"
    META_SHEET_NAME = "meta"
    MEMBER_HEADERS = ["userId", "displayName"]
    EXPENSE_HEADERS = [
        "id",
        "groupId",
        "description",
        "amount",
        "currency",
        "date",
        "paidBy",
        "paidByName",
        "splitBetween_json",
        "category",
        "notes",
    ]
    SETTLEMENT_HEADERS = ["id", "payerId", "payeeId", "amount", "currency", "paymentMethod", "date", "status"]
    META_HEADERS = ["key", "value"]
    SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

    def __init__(self, sheet_id: Optional[str] = None):
        self.available = False
        self.reason = ""
        self.sheet_id = sheet_id if sheet_id is not None else config.google_sheet_id()
        self._spreadsheet = None
        self._worksheets: Dict[str, Any] = {}

        if not self.sheet_id:
            self.reason = "GOOGLE_SHEET_ID is not set"
            return

        try:
            creds = self._build_credentials()
            client = gspread.authorize(creds)
            self.attach(client.open_by_key(self.sheet_id))
        except Exception as exc:
            self.available = False
            self.reason = f"Google Sheets init failed ({exc.__class__.__name__})"
            logger.warning("Google Sheets backend unavailable: %s", self.reason)

    def _build_credentials(self):
        service_account_json = (os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON") or "").strip()
        service_account_file = (os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE") or "").strip()

        if service_account_json:
            info = json.loads(service_account_json)
            if not isinstance(info, dict):
                raise ValueError("GOOGLE_SERVICE_ACCOUNT_JSON must decode to an object")
            return Credentials.from_service_account_info(info, scopes=self.SCOPES)

        if service_account_file:
            return Credentials.from_service_account_file(service_account_file, scopes=self.SCOPES)

        # application default credentials
        creds, _ = google.auth.default(scopes=self.SCOPES)
        return creds

    def _layout(self) -> Dict[str, List[str]]:
        return {
            self.MEMBERS_SHEET_NAME: self.MEMBER_HEADERS,
            self.EXPENSES_SHEET_NAME: self.EXPENSE_HEADERS,
            self.SETTLEMENTS_SHEET_NAME: self.SETTLEMENT_HEADERS,
            self.META_SHEET_NAME: self.META_HEADERS,
        }

    def attach(self, spreadsheet) -> None:
        """Bind to an opened spreadsheet and make sure every worksheet exists."""
        self._spreadsheet = spreadsheet
        for title, headers in self._layout().items():
            self._worksheets[title] = self._get_or_create_worksheet(title, rows=200, cols=max(4, len(headers)))
        self._ensure_headers()
        self.available = True
        self.reason = ""

    def _get_or_create_worksheet(self, title: str, rows: int, cols: int):
        try:
            return self._spreadsheet.worksheet(title)
        except gspread.exceptions.WorksheetNotFound:
            return self._spreadsheet.add_worksheet(title=title, rows=rows, cols=cols)

    @staticmethod
    def _ensure_sheet_size(ws, min_rows: int, min_cols: int):
        new_rows = max(ws.row_count, min_rows)
        new_cols = max(ws.col_count, min_cols)
        if new_rows != ws.row_count or new_cols != ws.col_count:
            ws.resize(rows=new_rows, cols=new_cols)

    def _ensure_headers(self):
        for title, headers in self._layout().items():
            ws = self._worksheets[title]
            first = ws.row_values(1) or []
            if [x.strip() for x in first] != headers:
                self._ensure_sheet_size(ws, 2, len(headers))
                ws.update(range_name="A1", values=[headers], value_input_option="RAW")

    def _write(self, title: str, rows: List[List[str]]):
        ws = self._worksheets[title]
        self._ensure_sheet_size(ws, len(rows) + 10, len(rows[0]))
        # RAW keeps user text as plain values, never formulas
        ws.clear()
        ws.update(range_name="A1", values=rows, value_input_option="RAW")

    def _read(self, title: str) -> List[Dict[str, str]]:
        values = self._worksheets[title].get_all_values() or []
        if not values:
            return []
        headers = [str(h).strip() for h in values[0]]
        records = []
        for row in values[1:]:
            if not any(str(c).strip() for c in row):
                continue
            records.append({h: (row[idx] if idx < len(row) else "") for idx, h in enumerate(headers) if h})
        return records

    @staticmethod
    def _expense_from_record(record: Dict[str, str]) -> Dict[str, Any]:
        d: Dict[str, Any] = {k: v for k, v in record.items() if k != "splitBetween_json"}
        raw_splits = (record.get("splitBetween_json") or "").strip()
        d["splitBetween"] = json.loads(raw_splits) if raw_splits else []
        return d

    def save_state(self, data: Dict[str, Any]) -> bool:
        if not self.available:
            return False

        try:
            self._ensure_headers()
            member_rows = [self.MEMBER_HEADERS]
            for m in data.get("members", []):
                member_rows.append([str(m.get("userId", "")), str(m.get("displayName", ""))])

            expense_rows = [self.EXPENSE_HEADERS]
            for e in data.get("expenses", []):
                row = []
                for h in self.EXPENSE_HEADERS:
                    if h == "splitBetween_json":
                        row.append(json.dumps(e.get("splitBetween", []), ensure_ascii=False))
                    else:
                        row.append(str(e.get(h, "")))
                expense_rows.append(row)

            settlement_rows = [self.SETTLEMENT_HEADERS]
            for s in data.get("settlements", []):
                settlement_rows.append([str(s.get(h, "")) for h in self.SETTLEMENT_HEADERS])

            meta_rows = [
                self.META_HEADERS,
                ["groupId", str(data.get("groupId", ""))],
                ["next_id", str(data.get("next_id", 1))],
            ]

            self._write(self.MEMBERS_SHEET_NAME, member_rows)
            self._write(self.EXPENSES_SHEET_NAME, expense_rows)
            self._write(self.SETTLEMENTS_SHEET_NAME, settlement_rows)
            self._write(self.META_SHEET_NAME, meta_rows)
            return True
        except Exception:
            logger.exception("Failed to save ledger state to Google Sheets")
            return False

    def load_state(self) -> Dict[str, Any]:
        if not self.available:
            return {}

        try:
            self._ensure_headers()
            meta = {r.get("key", ""): r.get("value", "") for r in self._read(self.META_SHEET_NAME)}
            expenses = []
            for record in self._read(self.EXPENSES_SHEET_NAME):
                try:
                    expenses.append(self._expense_from_record(record))
                except ValueError:
                    logger.warning("Skipping expense row with unreadable splits: %r", record.get("id"))
            return {
                "groupId": meta.get("groupId", ""),
                "next_id": meta.get("next_id", ""),
                "members": self._read(self.MEMBERS_SHEET_NAME),
                "expenses": expenses,
                "settlements": self._read(self.SETTLEMENTS_SHEET_NAME),
            }
        except Exception:
            logger.exception("Failed to load ledger state from Google Sheets")
            return {}


class GroupLedger:
    """
    One group's expense ledger. The caller creates a GroupLedger and uses its
    methods to read/write data; every write is persisted immediately.
    """

    def __init__(
        self,
        group_id: str = "default",
        data_file: Optional[str] = None,
        sheets_backend: Optional[GoogleSheetsBackend] = None,
    ):
        self.group_id = group_id
        self.data_file = data_file or config.data_file()
        self.members: List[Member] = []
        self.expenses: List[Expense] = []
        # recorded payments, stored as plain dicts
        self.settlements: List[Dict[str, Any]] = []
        self._next_id = 1
        self._gs_backend = sheets_backend if sheets_backend is not None else GoogleSheetsBackend()
        self.load()

    def uses_google_sheets(self) -> bool:
        """True when the durable Google Sheets backend is active."""
        return bool(self._gs_backend and self._gs_backend.available)

    def storage_status(self) -> Tuple[str, str]:
        """Return current storage backend and a short diagnostic message."""
        if self.uses_google_sheets():
            return "google_sheets", "Persistent storage active (Google Sheets)."
        reason = getattr(self._gs_backend, "reason", "Google Sheets not configured")
        return "local_json", f"Using local file fallback: {reason}."

    # -----------------------
    # Members
    # -----------------------
    def get_members(self) -> List[Member]:
        return list(self.members)

    def get_member(self, user_id: str) -> Member:
        for m in self.members:
            if m.user_id == user_id:
                return m
        raise MemberNotFoundError(f"User {user_id} is not a member of group {self.group_id}")

    def add_member(self, user_id: str, display_name: str = "") -> bool:
        """Returns True when the member was added, False if already present."""
        user_id = (user_id or "").strip()
        if not user_id:
            raise InvalidRecordError("user_id must not be empty")
        if any(m.user_id == user_id for m in self.members):
            return False
        self.members.append(Member(user_id=user_id, display_name=(display_name or user_id).strip()))
        self.save()
        return True

    def remove_member(self, user_id: str) -> bool:
        """
        Remove a member from the roster. Their expenses stay; balances will
        report them as stale references until the history is cleaned up.
        """
        before = len(self.members)
        self.members = [m for m in self.members if m.user_id != user_id]
        if len(self.members) == before:
            return False
        open_refs = [r for r in self.stale_references() if r.user_id == user_id]
        if open_refs:
            logger.warning("Removed member %s still referenced by %d expense entries", user_id, len(open_refs))
        self.save()
        return True

    def _resolve_participants(self, participants: Optional[Sequence[Participant]]) -> Result:
        """Map user ids / Member options onto roster members."""
        if participants is None:
            return Result.ok(list(self.members))
        roster = {m.user_id: m for m in self.members}
        resolved: List[Member] = []
        issues: List[SplitIssue] = []
        for p in participants:
            user_id = p.user_id if isinstance(p, Member) else str(p)
            known = roster.get(user_id)
            if known is None:
                issues.append(SplitIssue(SplitIssueKind.UNKNOWN_MEMBER, f"{user_id} is not a group member", user_id))
                continue
            if isinstance(p, Member):
                resolved.append(replace(p, display_name=p.display_name or known.display_name))
            else:
                resolved.append(known)
        if issues:
            return Result.error("; ".join(i.message for i in issues), issues)
        return Result.ok(resolved)

    def _check_payer(self, paid_by: str) -> Optional[Result]:
        if any(m.user_id == paid_by for m in self.members):
            return None
        issue = SplitIssue(SplitIssueKind.UNKNOWN_MEMBER, f"Payer {paid_by} is not a group member", paid_by)
        return Result.error(issue.message, [issue])

    # -----------------------
    # Expenses
    # -----------------------
    def add_expense(
        self,
        amount: float,
        paid_by: str,
        split_type=SplitType.EQUAL,
        participants: Optional[Sequence[Participant]] = None,
        currency: Optional[str] = None,
        description: str = "",
        category: Any = ExpenseCategory.OTHER,
        date: str = "",
        notes: str = "",
        allow_fallback: bool = False,
    ) -> Result:
        """
        Split, validate and store a new expense.

        participants: user ids or Member objects carrying percentage /
        custom_amount options; None means the whole roster.
        Returns Result.ok(Expense) or Result.error with the split issues.
        """
        # refresh from remote before mutating to reduce stale-session overwrites
        if self.uses_google_sheets():
            self.load()
        bad_payer = self._check_payer(paid_by)
        if bad_payer is not None:
            return bad_payer
        resolved = self._resolve_participants(participants)
        if not resolved.is_success():
            return resolved

        currency = (currency or config.default_currency()).upper()
        prepared = prepare_split(amount, split_type, resolved.data, currency, allow_fallback=allow_fallback)
        if not prepared.is_success():
            logger.info("Rejected expense of %s %s: %s", amount, currency, prepared.message)
            return prepared

        exp = Expense(
            id=str(self._next_id),
            amount=amount,
            currency=currency,
            paid_by=paid_by,
            split_between=list(prepared.data.splits),
            date=date or datetime.date.today().isoformat(),
            group_id=self.group_id,
            description=description,
            paid_by_name=self.get_member(paid_by).display_name,
            category=ExpenseCategory.parse(category),
            notes=notes,
        )
        self._next_id += 1
        self.expenses.append(exp)
        self.save()
        return Result.ok(exp, warnings=prepared.warnings)

    def get_expense(self, expense_id: str) -> Expense:
        for e in self.expenses:
            if e.id == str(expense_id):
                return e
        raise ExpenseNotFoundError(f"Expense {expense_id} not found")

    def edit_expense(self, expense_id: str, **changes) -> Result:
        """
        Build an edited copy of an expense and store it in place of the old one.

        Supported changes: amount, paid_by, split_type, participants, currency,
        description, category, date, notes, allow_fallback.
        Changing amount, split_type or participants recomputes the split; when
        only the amount changes, the previous proportions are kept. Members
        still in the split keep their paid flag.
        Raises ExpenseNotFoundError for an unknown id.
        """
        if self.uses_google_sheets():
            self.load()
        old = self.get_expense(expense_id)
        allow_fallback = changes.pop("allow_fallback", False)
        unknown = set(changes) - {
            "amount", "paid_by", "split_type", "participants", "currency",
            "description", "category", "date", "notes",
        }
        if unknown:
            raise TypeError(f"Unsupported expense fields: {sorted(unknown)}")

        paid_by = changes.get("paid_by", old.paid_by)
        bad_payer = self._check_payer(paid_by)
        if bad_payer is not None:
            return bad_payer

        amount = changes.get("amount", old.amount)
        currency = str(changes.get("currency", old.currency)).upper()
        splits = old.split_between
        warnings: List[Any] = []
        if {"amount", "split_type", "participants"} & set(changes):
            split_type = changes.get("split_type")
            participants = changes.get("participants")
            if participants is None and split_type is None:
                # keep the old proportions
                split_type = SplitType.PERCENTAGE
                members = [Member(s.user_id, s.user_name, percentage=s.share * 100.0) for s in old.split_between]
                resolved = self._resolve_participants(members)
            else:
                if participants is None:
                    participants = [s.user_id for s in old.split_between]
                resolved = self._resolve_participants(participants)
            if not resolved.is_success():
                return resolved
            prepared = prepare_split(amount, split_type or SplitType.EQUAL, resolved.data, currency, allow_fallback=allow_fallback)
            if not prepared.is_success():
                return prepared
            # members who already settled their part stay marked as paid
            paid = {s.user_id for s in old.split_between if s.is_paid}
            splits = [replace(s, is_paid=s.user_id in paid) for s in prepared.data.splits]
            warnings = prepared.warnings

        new = replace(
            old,
            amount=amount,
            currency=currency,
            paid_by=paid_by,
            paid_by_name=self.get_member(paid_by).display_name,
            split_between=list(splits),
            description=changes.get("description", old.description),
            category=ExpenseCategory.parse(changes.get("category", old.category)),
            date=changes.get("date", old.date),
            notes=changes.get("notes", old.notes),
        )
        self.expenses = [new if e.id == old.id else e for e in self.expenses]
        self.save()
        logger.info("Edited expense id=%s", old.id)
        return Result.ok(new, warnings=warnings)

    def delete_expense(self, expense_id: str) -> bool:
        """Remove expense by id. Returns True if deleted, False if not found.

        IDs are not renumbered, to keep references stable across sessions.
        """
        if self.uses_google_sheets():
            self.load()
        target_id = str(expense_id)
        logger.info("Attempting to delete expense id=%s", target_id)
        for i, e in enumerate(self.expenses):
            if e.id != target_id:
                continue
            removed = self.expenses.pop(i)
            try:
                self.save()
            except OSError:
                logger.exception("Error saving after delete")
                # restore in-memory list if save failed
                self.expenses.insert(i, removed)
                return False
            logger.info("Deleted expense id=%s (amount=%s %s). Remaining expenses=%d.",
                        target_id, removed.amount, removed.currency, len(self.expenses))
            return True
        logger.info("Expense id=%s not found", target_id)
        return False

    def list_expenses(self, year: Optional[int] = None, month: Optional[int] = None) -> List[Expense]:
        """
        Return the list of expenses, optionally filtered by year and/or month.
        Expenses without a date are skipped when filtering.
        """
        if year is None and month is None:
            return list(self.expenses)
        out: List[Expense] = []
        for e in self.expenses:
            if not e.date:
                continue
            d = datetime.date.fromisoformat(e.date)
            if year is not None and d.year != year:
                continue
            if month is not None and d.month != month:
                continue
            out.append(e)
        return out

    # -----------------------
    # Balances / settlements
    # -----------------------
    def _settled_balances(self) -> Dict[str, List[UserBalance]]:
        """
        Per-currency balances from the expenses, with every recorded payment
        counted as paid by its payer and owed by its payee.
        """
        by_currency = balances_by_currency(self.expenses, self.members)
        names = {m.user_id: m.display_name for m in self.members}
        for s in self.settlements:
            payer, payee = str(s.get("payerId") or ""), str(s.get("payeeId") or "")
            if payer not in names or payee not in names:
                logger.warning("Settlement %s refers to a member no longer in the group; not counted", s.get("id"))
                continue
            try:
                amount = float(s.get("amount"))
            except (TypeError, ValueError):
                logger.warning("Settlement %s has an invalid amount %r; not counted", s.get("id"), s.get("amount"))
                continue
            currency = str(s.get("currency") or config.default_currency()).upper()
            rows = OrderedDict((b.user_id, b) for b in by_currency.get(currency, []))
            for user_id in (payer, payee):
                if user_id not in rows:
                    rows[user_id] = UserBalance(user_id=user_id, user_name=names[user_id])
            rows[payer] = replace(rows[payer], total_paid=rows[payer].total_paid + amount)
            rows[payee] = replace(rows[payee], total_owed=rows[payee].total_owed + amount)
            by_currency[currency] = list(rows.values())
        return by_currency

    def balances(self) -> Dict[str, List[UserBalance]]:
        """Net balances grouped per currency: { currency: [UserBalance, ...] }."""
        return self._settled_balances()

    def settle_suggestions(self) -> List[SettlementTransaction]:
        """Payments still needed to bring every balance to zero, per currency."""
        transactions: List[SettlementTransaction] = []
        for currency, balances in self._settled_balances().items():
            transactions.extend(settle_balances(balances, currency))
        return transactions

    def stale_references(self) -> List[StaleReference]:
        return find_stale_references(self.expenses, self.members)

    def record_settlement(
        self,
        payer_id: str,
        payee_id: str,
        amount: float,
        currency: Optional[str] = None,
        payment_method: str = "cash",
        date: str = "",
    ) -> Result:
        """
        Store a payment made outside the app and mark the matching splits paid.
        Returns Result.ok(SettlementApplication) or Result.error.
        """
        if self.uses_google_sheets():
            self.load()
        issues: List[SplitIssue] = []
        for user_id in (payer_id, payee_id):
            if not any(m.user_id == user_id for m in self.members):
                issues.append(SplitIssue(SplitIssueKind.UNKNOWN_MEMBER, f"{user_id} is not a group member", user_id))
        if payer_id == payee_id:
            issues.append(SplitIssue(SplitIssueKind.INVALID_AMOUNT, "Payer and payee must be different members"))
        if amount <= 0:
            issues.append(SplitIssue(SplitIssueKind.INVALID_AMOUNT, f"Amount must be positive, got {amount}"))
        if issues:
            return Result.error("; ".join(i.message for i in issues), issues)

        currency = (currency or config.default_currency()).upper()
        application = apply_settlement(self.expenses, payer_id, payee_id, amount, currency)
        self.expenses = application.expenses
        self.settlements.append({
            "id": f"s{len(self.settlements) + 1}",
            "payerId": payer_id,
            "payeeId": payee_id,
            "amount": amount,
            "currency": currency,
            "paymentMethod": payment_method,
            "date": date or datetime.date.today().isoformat(),
            "status": "completed",
        })
        self.save()
        logger.info("Recorded settlement %s -> %s %.2f %s (expenses updated=%d)",
                    payer_id, payee_id, amount, currency, len(application.updated_expense_ids))
        return Result.ok(application)

    # -----------------------
    # Persistence
    # -----------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "next_id": self._next_id,
            "members": [m.to_dict() for m in self.members],
            "expenses": [e.to_dict() for e in self.expenses],
            "settlements": list(self.settlements),
        }

    def save(self):
        """
        Persist ledger state to Google Sheets when available, otherwise as
        JSON written atomically to the data file.
        """
        data = self.to_dict()

        if self.uses_google_sheets():
            logger.info("Saving data to Google Sheets (expenses=%d)", len(self.expenses))
            if self._gs_backend.save_state(data):
                return
            logger.warning("Google Sheets save failed, falling back to local JSON")

        target = os.path.abspath(self.data_file)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        logger.info("Saving data to %s (expenses=%d)", target, len(self.expenses))
        # atomic write: write to temp file then move
        fd, tmp_path = tempfile.mkstemp(prefix="tmp_ledger_", dir=os.path.dirname(target), text=True)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            shutil.move(tmp_path, target)
        except OSError:
            logger.exception("Failed to save data file")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def load(self):
        """
        Load ledger state from Google Sheets when configured, otherwise local JSON.
        Records that fail validation are logged and skipped.
        """
        data: Dict[str, Any] = {}
        if self.uses_google_sheets():
            logger.info("Loading data from Google Sheets")
            data = self._gs_backend.load_state() or {}

        if not data:
            if not os.path.exists(self.data_file):
                return
            with open(self.data_file, "r", encoding="utf-8") as f:
                data = json.load(f)

        members: List[Member] = []
        for d in data.get("members", []) or []:
            try:
                members.append(Member.from_dict(d))
            except InvalidRecordError as exc:
                logger.warning("Skipping invalid member record: %s", exc)

        expenses: List[Expense] = []
        for d in data.get("expenses", []) or []:
            try:
                expenses.append(Expense.from_dict(d))
            except InvalidRecordError as exc:
                logger.warning("Skipping invalid expense record: %s", exc)

        self.group_id = str(data.get("groupId") or self.group_id)
        self.members = members
        self.expenses = expenses
        self.settlements = list(data.get("settlements", []) or [])

        # next id must always exceed the largest numeric id already stored
        max_id = max((int(e.id) for e in expenses if e.id.isdigit()), default=0)
        try:
            next_id_raw = int(data.get("next_id", max_id + 1))
        except (TypeError, ValueError):
            next_id_raw = max_id + 1
        self._next_id = max(next_id_raw, max_id + 1)
