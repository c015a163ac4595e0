"""
errors.py - outcome types and exceptions

Expected business outcomes (a split that cannot be accepted, a stale member
reference) are returned as values through Result / SplitIssue. Exceptions are
kept for malformed records found at the boundary and for lookups of ids that
do not exist.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional


class SplitIssueKind(Enum):
    INVALID_AMOUNT = "invalid_amount"
    NO_MEMBERS = "no_members"
    DUPLICATE_MEMBER = "duplicate_member"
    INCONSISTENT_PERCENTAGES = "inconsistent_percentages"
    INCONSISTENT_CUSTOM_AMOUNTS = "inconsistent_custom_amounts"
    INVALID_SPLIT = "invalid_split"
    UNKNOWN_MEMBER = "unknown_member"


@dataclass(frozen=True)
class SplitIssue:
    """A single problem found while checking a split request."""
    kind: SplitIssueKind
    message: str
    user_id: Optional[str] = None


class Result:
    """Represents an operation result - success with data, or error with a message."""

    def __init__(
        self,
        success: bool,
        message: str = "",
        data: Any = None,
        issues: Optional[List[SplitIssue]] = None,
        warnings: Optional[List[Any]] = None,
    ):
        self.success = success
        self.message = message
        self.data = data
        self.issues = list(issues or [])
        # non-fatal findings attached to a successful result
        self.warnings = list(warnings or [])

    @staticmethod
    def ok(data: Any = None, warnings: Optional[List[Any]] = None) -> "Result":
        return Result(True, "", data, warnings=warnings)

    @staticmethod
    def error(message: str, issues: Optional[List[SplitIssue]] = None) -> "Result":
        return Result(False, message, issues=issues)

    def is_success(self) -> bool:
        return self.success

    def __repr__(self) -> str:
        if self.success:
            return f"Result.ok({self.data!r})"
        return f"Result.error({self.message!r})"


class FairsplitError(Exception):
    """Base exception for all fairsplit errors."""
    pass


class InvalidRecordError(FairsplitError):
    """Raised when a stored or submitted record cannot be parsed."""
    pass


class ExpenseNotFoundError(FairsplitError):
    """Raised when an expense id does not exist in the ledger."""
    pass


class MemberNotFoundError(FairsplitError):
    """Raised when a user id is not part of the group roster."""
    pass
