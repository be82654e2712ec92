from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from matching import OffsetMatcher
from models import (
    Confirmed,
    Entry,
    Offset,
    OffsetStatus,
    Pending,
    Rejected,
    RejectedOffset,
)
from money import Money
from schemas import OffsetIn, OffsetMatchIn, OffsetUpdateIn
from services import (
    OffsetConflictError,
    OffsetNotFound,
    OffsetService,
    OffsetValidationError,
    OffsetValidator,
)

TODAY = date(2025, 6, 15)


@pytest.fixture
def family(ledger):
    return ledger.family()


@pytest.fixture
def checking(ledger, family):
    return ledger.account(family)


@pytest.fixture
def food(ledger, family):
    return ledger.category(family, "Food & Drink")


@pytest.fixture
def offsets(session, family, resync):
    return OffsetService(session, family.id, resync=resync)


def _count(session, model) -> int:
    return session.execute(select(func.count(model.id))).scalar_one()


def test_offset_links_expense_to_refund(ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY - timedelta(days=5), category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)

    offset = offsets.create(
        OffsetIn(
            expense_transaction_id=expense.id,
            offset_transaction_id=refund.id,
            status=OffsetStatus.confirmed,
        )
    )

    assert offset.id is not None
    assert offset.outcome == Confirmed(offset)
    assert offsets.link_net_amount(offset.id) == Money(Decimal("50"), "USD")
    assert offset.expense_amount == Money(Decimal("100"), "USD")
    assert offset.offset_amount == Money(Decimal("50"), "USD")
    assert offset.category.id == food.id
    assert offset.date == TODAY - timedelta(days=5)


def test_offset_requires_same_category_or_uncategorized(
    ledger, family, checking, food, offsets
) -> None:
    other = ledger.category(family, "Other")
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=other)

    with pytest.raises(OffsetValidationError) as exc:
        offsets.create(
            OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
        )

    assert exc.value.codes == ["category_mismatch"]
    assert (
        "Offset must have the same category as the expense or be uncategorized"
        in str(exc.value)
    )


def test_offset_allows_uncategorized_refund(ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY)

    offset = offsets.create(
        OffsetIn(
            expense_transaction_id=expense.id,
            offset_transaction_id=refund.id,
            status=OffsetStatus.confirmed,
        )
    )

    assert offset.status == OffsetStatus.confirmed


def test_offset_requires_positive_expense_and_negative_refund(
    session, ledger, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)

    with pytest.raises(OffsetValidationError) as exc:
        offsets.create(
            OffsetIn(expense_transaction_id=refund.id, offset_transaction_id=expense.id)
        )

    assert set(exc.value.codes) == {"expense_not_positive", "offset_not_negative"}
    assert _count(session, Offset) == 0


def test_validation_collects_every_violation(ledger, family, checking, offsets) -> None:
    groceries = ledger.category(family, "Groceries")
    travel = ledger.category(family, "Travel")
    expense = ledger.txn(checking, -10_000, TODAY - timedelta(days=45), category=groceries)
    refund = ledger.txn(checking, 5_000, TODAY, category=travel)

    with pytest.raises(OffsetValidationError) as exc:
        offsets.create(
            OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
        )

    assert exc.value.codes == [
        "expense_not_positive",
        "offset_not_negative",
        "category_mismatch",
        "date_out_of_range",
    ]


def test_pending_offset_must_be_within_30_days(
    session, ledger, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY - timedelta(days=35), category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)

    with pytest.raises(OffsetValidationError) as exc:
        offsets.create(
            OffsetIn(
                expense_transaction_id=expense.id,
                offset_transaction_id=refund.id,
                status=OffsetStatus.pending,
            )
        )
    assert "Must be within 30 days" in str(exc.value)
    assert _count(session, Offset) == 0

    offset = offsets.create(
        OffsetIn(
            expense_transaction_id=expense.id,
            offset_transaction_id=refund.id,
            status=OffsetStatus.confirmed,
        )
    )
    assert offset.status == OffsetStatus.confirmed


def test_confirmed_offset_may_span_up_to_365_days(
    ledger, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY - timedelta(days=365), category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    late = ledger.txn(checking, -1_000, TODAY + timedelta(days=1), category=food)

    offsets.create(
        OffsetIn(
            expense_transaction_id=expense.id,
            offset_transaction_id=refund.id,
            status=OffsetStatus.confirmed,
        )
    )
    with pytest.raises(OffsetValidationError) as exc:
        offsets.create(
            OffsetIn(
                expense_transaction_id=expense.id,
                offset_transaction_id=late.id,
                status=OffsetStatus.confirmed,
            )
        )
    assert exc.value.codes == ["date_out_of_range"]
    assert "Must be within 365 days" in str(exc.value)


def test_offset_must_be_from_same_family(session, ledger, checking, food, offsets) -> None:
    other_family = ledger.family(name="Other family")
    other_account = ledger.account(other_family, name="Family 2 Account")
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(other_account, -5_000, TODAY)

    violations = OffsetValidator(session).violations(
        expense, refund, OffsetStatus.pending
    )
    assert [v.code for v in violations] == ["family_mismatch"]
    assert violations[0].message == "Must be from same family"

    with pytest.raises(OffsetNotFound):
        offsets.create(
            OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
        )


def test_offset_transaction_can_only_be_used_once(
    session, ledger, checking, food, offsets
) -> None:
    first = ledger.txn(checking, 10_000, TODAY, category=food)
    second = ledger.txn(checking, 15_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)

    offsets.create(
        OffsetIn(
            expense_transaction_id=first.id,
            offset_transaction_id=refund.id,
            status=OffsetStatus.confirmed,
        )
    )
    with pytest.raises(OffsetValidationError) as exc:
        offsets.create(
            OffsetIn(
                expense_transaction_id=second.id,
                offset_transaction_id=refund.id,
                status=OffsetStatus.confirmed,
            )
        )

    assert exc.value.codes == ["offset_already_used"]
    assert _count(session, Offset) == 1


def test_duplicate_pair_reports_both_uniqueness_rules(
    ledger, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    data = OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)

    offsets.create(data)
    with pytest.raises(OffsetValidationError) as exc:
        offsets.create(data)

    assert exc.value.codes == ["duplicate_pair", "offset_already_used"]


def test_concurrent_double_link_surfaces_as_conflict(
    session, ledger, checking, food, offsets, queued_accounts, monkeypatch
) -> None:
    first = ledger.txn(checking, 10_000, TODAY, category=food)
    second = ledger.txn(checking, 15_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    offsets.create(
        OffsetIn(expense_transaction_id=first.id, offset_transaction_id=refund.id)
    )
    offsets.resync.scheduler.remove_all_jobs()

    # the advisory check ran before the competing write landed
    monkeypatch.setattr(offsets.validator, "validate", lambda *args, **kwargs: None)

    with pytest.raises(OffsetConflictError) as exc:
        offsets.create(
            OffsetIn(expense_transaction_id=second.id, offset_transaction_id=refund.id)
        )

    assert isinstance(exc.value, OffsetValidationError)
    assert exc.value.codes == ["conflict"]
    assert _count(session, Offset) == 1
    assert queued_accounts() == set()


def test_expense_can_have_multiple_offsets(ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund1 = ledger.txn(checking, -3_000, TODAY, category=food)
    refund2 = ledger.txn(checking, -2_000, TODAY, category=food)

    for refund in (refund1, refund2):
        offsets.create(
            OffsetIn(
                expense_transaction_id=expense.id,
                offset_transaction_id=refund.id,
                status=OffsetStatus.confirmed,
            )
        )

    assert offsets.total_offset_amount(expense.id) == Money(Decimal("50"), "USD")
    assert offsets.net_expense_amount(expense.id) == Money(Decimal("50"), "USD")
    assert len(offsets.offsets_for_expense(expense.id)) == 2


def test_pending_offsets_do_not_reduce_net_expense(
    ledger, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -3_000, TODAY, category=food)
    offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )

    assert offsets.total_offset_amount(expense.id) == Money.zero("USD")
    assert offsets.net_expense_amount(expense.id) == Money(Decimal("100"), "USD")
    assert not offsets.has_offsets(expense.id)
    assert not offsets.is_offset(refund.id)


def test_total_offset_amount_converts_foreign_refunds(
    ledger, family, food, offsets
) -> None:
    usd = ledger.account(family, name="USD card")
    eur = ledger.account(family, name="EUR card", currency="EUR")
    expense = ledger.txn(usd, 10_000, TODAY, category=food)
    refund = ledger.txn(eur, -2_000, TODAY - timedelta(days=2), category=food)
    ledger.rate(TODAY - timedelta(days=2), "EUR", "USD", 1_100_000)

    offsets.create(
        OffsetIn(
            expense_transaction_id=expense.id,
            offset_transaction_id=refund.id,
            status=OffsetStatus.confirmed,
        )
    )

    assert offsets.total_offset_amount(expense.id) == Money(Decimal("22"), "USD")
    assert offsets.net_expense_amount(expense.id) == Money(Decimal("78"), "USD")


def test_reject_creates_rejected_offset_and_destroys_offset(
    session, ledger, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    offset = offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )

    links_before = _count(session, Offset)
    ledger_before = _count(session, RejectedOffset)
    offset_id = offset.id
    outcome = offsets.reject(offset_id)

    assert isinstance(outcome, Rejected)
    assert outcome.rejected_offset.expense_transaction_id == expense.id
    assert outcome.rejected_offset.offset_transaction_id == refund.id
    assert _count(session, Offset) == links_before - 1
    assert _count(session, RejectedOffset) == ledger_before + 1
    with pytest.raises(OffsetNotFound):
        offsets.confirm(offset_id)


def test_rejected_link_is_no_longer_suggested(
    session, ledger, family, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY + timedelta(days=1), category=food)
    other_refund = ledger.txn(checking, -2_000, TODAY + timedelta(days=2), category=food)
    offset = offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )

    offsets.reject(offset.id)

    pairs = [
        (c.expense_transaction_id, c.offset_transaction_id)
        for c in OffsetMatcher(session, family.id).candidates()
    ]
    assert (expense.id, refund.id) not in pairs
    assert pairs == [(expense.id, other_refund.id)]


def test_reject_reuses_existing_ledger_row(session, ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    offsets.ledger.reject(expense.id, refund.id)
    offset = offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )

    offsets.reject(offset.id)

    assert _count(session, RejectedOffset) == 1
    assert _count(session, Offset) == 0


def test_confirm_changes_status_to_confirmed(ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    offset = offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )
    assert offset.outcome == Pending(offset)

    outcome = offsets.confirm(offset.id)

    assert isinstance(outcome, Confirmed)
    assert offsets.get(offset.id).status == OffsetStatus.confirmed
    assert offsets.confirm(offset.id).offset.id == offset.id


def test_confirm_revalidates_date_range(session, ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY + timedelta(days=10), category=food)
    offset = offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )
    refund.entry.date = TODAY + timedelta(days=400)
    session.commit()

    with pytest.raises(OffsetValidationError) as exc:
        offsets.confirm(offset.id)

    assert exc.value.codes == ["date_out_of_range"]
    assert offsets.get(offset.id).status == OffsetStatus.pending


def test_transaction_has_offsets_and_is_offset(ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    assert not offsets.has_offsets(expense.id)
    assert not offsets.is_offset(refund.id)

    offsets.create(
        OffsetIn(
            expense_transaction_id=expense.id,
            offset_transaction_id=refund.id,
            status=OffsetStatus.confirmed,
        )
    )

    assert offsets.has_offsets(expense.id)
    assert offsets.is_offset(refund.id)
    assert not offsets.is_offset(expense.id)


def test_link_match_orients_pair_by_anchor_sign(ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY + timedelta(days=3), category=food)

    offset = offsets.link_match(
        refund.id, OffsetMatchIn(matched_transaction_id=expense.id, notes="Return")
    )

    assert offset.expense_transaction_id == expense.id
    assert offset.offset_transaction_id == refund.id
    assert offset.status == OffsetStatus.confirmed
    assert offset.notes == "Return"


def test_update_confirms_and_sets_notes(ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    offset = offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )

    outcome = offsets.update(
        offset.id, OffsetUpdateIn(status="confirmed", notes="Partial refund")
    )

    assert isinstance(outcome, Confirmed)
    assert outcome.offset.notes == "Partial refund"

    offsets.update_notes(offset.id, "Store credit")
    assert offsets.get(offset.id).notes == "Store credit"


def test_update_with_rejected_status_rejects(session, ledger, checking, food, offsets) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    offset = offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )

    outcome = offsets.update(offset.id, OffsetUpdateIn(status="rejected"))

    assert isinstance(outcome, Rejected)
    assert offsets.ledger.is_rejected(expense.id, refund.id)
    assert _count(session, Offset) == 0


def test_mutations_schedule_resync_for_both_accounts(
    ledger, family, food, offsets, queued_accounts
) -> None:
    card = ledger.account(family, name="Card")
    savings = ledger.account(family, name="Savings")
    expense = ledger.txn(card, 10_000, TODAY, category=food)
    refund = ledger.txn(savings, -5_000, TODAY, category=food)

    offset = offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )
    assert queued_accounts() == {card.id, savings.id}
    assert offset.account_ids == [card.id, savings.id]

    for step in (offsets.confirm, offsets.destroy):
        offsets.resync.scheduler.remove_all_jobs()
        step(offset.id)
        assert queued_accounts() == {card.id, savings.id}


def test_failed_create_schedules_nothing(ledger, checking, food, offsets, queued_accounts) -> None:
    expense = ledger.txn(checking, 10_000, TODAY - timedelta(days=60), category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)

    with pytest.raises(OffsetValidationError):
        offsets.create(
            OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
        )

    assert queued_accounts() == set()


def test_deleting_a_transaction_cascades_to_links_and_ledger(
    session, ledger, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    other_refund = ledger.txn(checking, -1_000, TODAY, category=food)
    offsets.create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )
    offsets.ledger.reject(expense.id, other_refund.id)

    session.delete(expense)
    session.commit()

    assert _count(session, Offset) == 0
    assert _count(session, RejectedOffset) == 0
    assert _count(session, Entry) == 2


def test_deleting_the_refund_side_removes_its_link(
    session, ledger, checking, food, offsets
) -> None:
    expense = ledger.txn(checking, 10_000, TODAY, category=food)
    refund = ledger.txn(checking, -5_000, TODAY, category=food)
    rejected_refund = ledger.txn(checking, -1_000, TODAY, category=food)
    offsets.create(
        OffsetIn(
            expense_transaction_id=expense.id,
            offset_transaction_id=refund.id,
            status=OffsetStatus.confirmed,
        )
    )
    offsets.ledger.reject(expense.id, rejected_refund.id)

    session.delete(refund)
    session.delete(rejected_refund)
    session.commit()

    assert _count(session, Offset) == 0
    assert _count(session, RejectedOffset) == 0
    assert not offsets.has_offsets(expense.id)
    assert offsets.net_expense_amount(expense.id) == Money(Decimal("100"), "USD")


def test_offsets_outside_family_are_not_found(ledger, session, resync) -> None:
    mine = ledger.family(name="Mine")
    theirs = ledger.family(name="Theirs")
    account = ledger.account(theirs)
    expense = ledger.txn(account, 10_000, TODAY)
    refund = ledger.txn(account, -5_000, TODAY)
    offset = OffsetService(session, theirs.id, resync=resync).create(
        OffsetIn(expense_transaction_id=expense.id, offset_transaction_id=refund.id)
    )

    with pytest.raises(OffsetNotFound):
        OffsetService(session, mine.id, resync=resync).get(offset.id)
