"""
splitter.py - split engine and split validation

calculate_splits turns an expense total, a split strategy and the
participating members into one fractional share per member:

  - EQUAL: every member gets 1/N
  - PERCENTAGE: declared percentages when they add up to 100 (+/- 0.1),
    otherwise 100/N each
  - CUSTOM_AMOUNT: declared amounts (clamped to the total); whatever is left
    is divided equally among the members that declared nothing

calculate_splits is lenient and never fails. Callers that persist a split go
through prepare_split, which checks the request first, refuses inconsistent
declarations unless allow_fallback is set, and validates the computed split
before handing it back.
"""

from decimal import Decimal, ROUND_FLOOR
from typing import Dict, List, Optional, Sequence

from fairsplit import config
from fairsplit.errors import Result, SplitIssue, SplitIssueKind
from fairsplit.models import ExpenseSplit, Member, SplitResult, SplitStatistics, SplitType
from fairsplit.money import minor_unit, to_decimal

# issues that the lenient fallback cannot paper over
_FATAL_ISSUES = {
    SplitIssueKind.INVALID_AMOUNT,
    SplitIssueKind.NO_MEMBERS,
    SplitIssueKind.DUPLICATE_MEMBER,
}


def _split(member: Member, share: float) -> ExpenseSplit:
    return ExpenseSplit(user_id=member.user_id, share=share, is_paid=False, user_name=member.display_name)


def _equal_shares(members: Sequence[Member]) -> List[float]:
    n = len(members)
    return [1.0 / n for _ in members]


def _percentage_shares(members: Sequence[Member]) -> List[float]:
    declared_total = sum(m.percentage or 0.0 for m in members)
    if config.PERCENTAGE_TOTAL_MIN <= declared_total <= config.PERCENTAGE_TOTAL_MAX:
        return [min(max(m.percentage or 0.0, 0.0), 100.0) / 100.0 for m in members]
    equal_pct = 100.0 / len(members)
    return [equal_pct / 100.0 for _ in members]


def _custom_amount_shares(total_amount: float, members: Sequence[Member]) -> List[float]:
    declared_total = sum(max(m.custom_amount, 0.0) for m in members if m.custom_amount is not None)
    declared_total = min(declared_total, total_amount)
    undeclared = [m for m in members if m.custom_amount is None]
    remaining = max(total_amount - declared_total, 0.0)
    equal_remaining = remaining / len(undeclared) if undeclared else 0.0

    shares = []
    for m in members:
        if m.custom_amount is not None:
            amount = min(max(m.custom_amount, 0.0), total_amount)
        else:
            amount = min(max(equal_remaining, 0.0), total_amount)
        shares.append(amount / total_amount)
    return shares


def calculate_splits(
    total_amount: float,
    split_type,
    members: Sequence[Member],
    currency: Optional[str] = None,
) -> SplitResult:
    """
    Compute one ExpenseSplit per member.

    An empty member list gives an empty split and a non-positive total gives
    a zero share for everybody; neither raises.
    """
    split_type = SplitType.parse(split_type)
    currency = (currency or config.default_currency()).upper()
    members = list(members)

    if not members:
        shares: List[float] = []
    elif total_amount <= 0:
        shares = [0.0 for _ in members]
    elif split_type is SplitType.PERCENTAGE:
        shares = _percentage_shares(members)
    elif split_type is SplitType.CUSTOM_AMOUNT:
        shares = _custom_amount_shares(total_amount, members)
    else:
        shares = _equal_shares(members)

    return SplitResult(
        splits=[_split(m, s) for m, s in zip(members, shares)],
        total_amount=total_amount,
        split_type=split_type,
        currency=currency,
    )


def check_split_request(total_amount: float, split_type, members: Sequence[Member]) -> Result:
    """
    Check a split request before computing it.

    Returns Result.ok() when the request is well formed, otherwise a
    Result.error listing every SplitIssue found.
    """
    split_type = SplitType.parse(split_type)
    issues: List[SplitIssue] = []

    if total_amount <= 0:
        issues.append(SplitIssue(SplitIssueKind.INVALID_AMOUNT, f"Amount must be positive, got {total_amount}"))
    if not members:
        issues.append(SplitIssue(SplitIssueKind.NO_MEMBERS, "At least one member is required"))

    seen = set()
    for m in members:
        if m.user_id in seen:
            issues.append(SplitIssue(SplitIssueKind.DUPLICATE_MEMBER, f"Member {m.user_id} listed twice", m.user_id))
        seen.add(m.user_id)

    if split_type is SplitType.PERCENTAGE and members:
        for m in members:
            if m.percentage is not None and not 0.0 <= m.percentage <= 100.0:
                issues.append(SplitIssue(
                    SplitIssueKind.INCONSISTENT_PERCENTAGES,
                    f"Percentage for {m.user_id} must be between 0 and 100, got {m.percentage}",
                    m.user_id,
                ))
        declared_total = sum(m.percentage or 0.0 for m in members)
        if not config.PERCENTAGE_TOTAL_MIN <= declared_total <= config.PERCENTAGE_TOTAL_MAX:
            issues.append(SplitIssue(
                SplitIssueKind.INCONSISTENT_PERCENTAGES,
                f"Percentages add up to {declared_total:g}, expected 100",
            ))

    if split_type is SplitType.CUSTOM_AMOUNT and members and total_amount > 0:
        declared = [m for m in members if m.custom_amount is not None]
        for m in declared:
            if m.custom_amount < 0:
                issues.append(SplitIssue(
                    SplitIssueKind.INCONSISTENT_CUSTOM_AMOUNTS,
                    f"Custom amount for {m.user_id} is negative ({m.custom_amount})",
                    m.user_id,
                ))
        declared_total = sum(max(m.custom_amount, 0.0) for m in declared)
        if declared_total > total_amount + config.SHARE_TOLERANCE:
            issues.append(SplitIssue(
                SplitIssueKind.INCONSISTENT_CUSTOM_AMOUNTS,
                f"Custom amounts add up to {declared_total:g}, more than the total {total_amount:g}",
            ))
        elif len(declared) == len(members) and declared_total < total_amount - config.SHARE_TOLERANCE:
            issues.append(SplitIssue(
                SplitIssueKind.INCONSISTENT_CUSTOM_AMOUNTS,
                f"Custom amounts add up to {declared_total:g}, less than the total {total_amount:g}",
            ))

    if issues:
        return Result.error("; ".join(i.message for i in issues), issues)
    return Result.ok()


def prepare_split(
    total_amount: float,
    split_type,
    members: Sequence[Member],
    currency: Optional[str] = None,
    allow_fallback: bool = False,
) -> Result:
    """
    Check, compute and validate a split ready to be stored with an expense.

    With allow_fallback=True inconsistent percentages/custom amounts are
    accepted and the engine's equal-split fallback applies; the issues are
    then reported as warnings on the successful Result.
    """
    members = list(members)
    check = check_split_request(total_amount, split_type, members)
    warnings: List[SplitIssue] = []
    if not check.is_success():
        fatal = any(i.kind in _FATAL_ISSUES for i in check.issues)
        if fatal or not allow_fallback:
            return check
        warnings = check.issues

    result = calculate_splits(total_amount, split_type, members, currency)
    if not validate_splits(result.splits, total_amount):
        total_share = sum(s.share for s in result.splits)
        issue = SplitIssue(SplitIssueKind.INVALID_SPLIT, f"Shares add up to {total_share:.4f}, expected 1.0")
        return Result.error(issue.message, warnings + [issue])
    return Result.ok(result, warnings=warnings)


def validate_splits(splits: Sequence[ExpenseSplit], total_amount: float) -> bool:
    """True when the split is non-empty and its shares add up to 1.0 (+/- 0.01)."""
    if not splits:
        return False
    total_share = sum(s.share for s in splits)
    return abs(total_share - 1.0) <= config.SHARE_TOLERANCE


def split_statistics(splits: Sequence[ExpenseSplit], total_amount: float) -> SplitStatistics:
    if not splits:
        return SplitStatistics(participant_count=0, average_share=0.0, min_share=0.0, max_share=0.0, total_amount=0.0)
    shares = [s.share for s in splits]
    return SplitStatistics(
        participant_count=len(shares),
        average_share=sum(shares) / len(shares),
        min_share=min(shares),
        max_share=max(shares),
        total_amount=total_amount,
    )


def allocate_amounts(result: SplitResult) -> Dict[str, float]:
    """
    Convert shares into money per member, rounded to the currency's minor
    unit. Every amount is first rounded down; the units left over are handed
    out one at a time to the largest remainders, so the amounts always add up
    to the rounded total.
    """
    if not result.splits:
        return {}
    if result.total_amount <= 0:
        return {s.user_id: 0.0 for s in result.splits}

    unit = minor_unit(result.currency)
    raw = [Decimal(str(s.share * result.total_amount)) for s in result.splits]
    floored = [r.quantize(unit, rounding=ROUND_FLOOR) for r in raw]
    target = to_decimal(sum(s.share for s in result.splits) * result.total_amount, result.currency)
    leftover = int((target - sum(floored)) / unit)

    order = sorted(range(len(raw)), key=lambda i: raw[i] - floored[i], reverse=True)
    for k in range(leftover):
        floored[order[k % len(order)]] += unit

    amounts: Dict[str, float] = {}
    for s, amount in zip(result.splits, floored):
        amounts[s.user_id] = amounts.get(s.user_id, 0.0) + float(amount)
    return amounts
