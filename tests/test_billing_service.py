from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from billing_engine.errors import (
    DeletionRefusedError,
    InconsistentGroupError,
    NotFoundError,
    SyncWarning,
    ValidationError,
)
from billing_engine.extensions import db
from billing_engine.models import (
    BillingDefinition,
    BillingStatus,
    CashFlowEntry,
    Installment,
    InstallmentStatus,
    PaymentMethod,
)
from billing_engine.services import billing_service
from billing_engine.services.billing_views import Scope, ViewFilters, ViewMode
from billing_engine.services.cash_flow_sync import SyncResult
from billing_engine.services.storage import billing_store


def schedule(billing_id):
    return billing_store.load_installments(billing_definition_id=billing_id)


def test_create_billing_definition_generates_schedule(make_billing):
    billing, rows = make_billing()

    assert billing.id is not None
    assert billing.status == BillingStatus.PENDING
    assert billing.payment_method == PaymentMethod.PIX
    stored = schedule(billing.id)
    assert [r.id for r in stored] == [r.id for r in rows]
    assert [r.due_date for r in stored] == [date(2024, 1, 5), date(2024, 2, 5), date(2024, 3, 5)]
    assert [r.description for r in stored] == ["Consulting (1/3)", "Consulting (2/3)", "Consulting (3/3)"]


@pytest.mark.parametrize(
    "fields, field",
    [
        ({"amount": "-1"}, "amount"),
        ({"amount": "abc"}, "amount"),
        ({"due_day": 0}, "due_day"),
        ({"installments": 0}, "installments"),
        ({"description": "  "}, "description"),
        ({"start_date": None}, "start_date"),
        ({"payment_method": "cheque"}, "payment_method"),
    ],
)
def test_create_billing_definition_validation(make_billing, fields, field):
    with pytest.raises(ValidationError) as excinfo:
        make_billing(**fields)
    assert excinfo.value.field == field
    assert BillingDefinition.query.count() == 0
    assert Installment.query.count() == 0


def test_create_billing_requires_existing_client(app):
    with pytest.raises(NotFoundError):
        billing_service.create_billing_definition(
            client_id=999,
            description="Consulting",
            amount="10",
            due_day=5,
            start_date=date(2024, 1, 1),
        )


def test_append_installments_end_to_end(make_billing):
    billing, original = make_billing()
    before = [(r.id, r.due_date, r.amount) for r in original]

    appended = billing_service.append_installments(billing.id, 2, per_installment_amount="350")

    assert [(r.installment_number, r.due_date, r.amount) for r in appended] == [
        (4, date(2024, 4, 5), Decimal("350.00")),
        (5, date(2024, 5, 5), Decimal("350.00")),
    ]
    stored = schedule(billing.id)
    assert [r.installment_number for r in stored] == [1, 2, 3, 4, 5]
    assert {r.total_installments for r in stored} == {5}
    assert stored[0].description == "Consulting (1/5)"
    assert [(r.id, r.due_date, r.amount) for r in stored[:3]] == before
    assert db.session.get(BillingDefinition, billing.id).installments == 5


def test_append_rolls_back_when_store_fails(make_billing, monkeypatch):
    billing, _ = make_billing()

    def broken_update(billing_id, patch):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(billing_store, "update_billing_definition", broken_update)
    with pytest.raises(SQLAlchemyError):
        billing_service.append_installments(billing.id, 2)
    monkeypatch.undo()

    stored = schedule(billing.id)
    assert len(stored) == 3
    assert {r.total_installments for r in stored} == {3}
    assert db.session.get(BillingDefinition, billing.id).installments == 3


def test_append_refuses_broken_group_until_repaired(make_billing):
    billing, rows = make_billing()
    billing_service.delete_installment(rows[1].id)

    with pytest.raises(InconsistentGroupError) as excinfo:
        billing_service.append_installments(billing.id, 1)
    assert excinfo.value.billing_definition_id == billing.id

    repaired = billing_service.repair_group(billing.id)
    assert [r.installment_number for r in repaired] == [1, 2]
    assert [r.description for r in repaired] == ["Consulting (1/2)", "Consulting (2/2)"]
    assert db.session.get(BillingDefinition, billing.id).installments == 2

    (added,) = billing_service.append_installments(billing.id, 1)
    assert added.installment_number == 3
    assert added.due_date == date(2024, 4, 5)


def test_append_validates_count(make_billing):
    billing, _ = make_billing()
    with pytest.raises(ValidationError):
        billing_service.append_installments(billing.id, 0)


def test_change_due_day_moves_future_open_rows(make_billing):
    billing, rows = make_billing()
    billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-01-05"})

    result = billing_service.change_due_day(billing.id, 31, today=date(2024, 1, 20))

    assert result.ok
    assert result.updated == [rows[1].id, rows[2].id]
    assert [r.due_date for r in schedule(billing.id)] == [
        date(2024, 1, 5),
        date(2024, 2, 29),
        date(2024, 3, 31),
    ]
    assert db.session.get(BillingDefinition, billing.id).due_day == 31


def test_change_due_day_unchanged_value_is_noop(make_billing):
    billing, _ = make_billing()
    result = billing_service.change_due_day(billing.id, 5, today=date(2024, 1, 1))
    assert result.updated_count == 0 and result.failed_count == 0


def test_change_due_day_rejects_out_of_range(make_billing):
    billing, _ = make_billing()
    with pytest.raises(ValidationError):
        billing_service.change_due_day(billing.id, 32)


def test_change_due_day_reports_partial_failure(make_billing, monkeypatch):
    billing, rows = make_billing()
    ids = [r.id for r in rows]
    real_save = billing_store.save_installment

    def flaky_save(row):
        if row.id == ids[2]:
            raise SQLAlchemyError("row locked")
        return real_save(row)

    monkeypatch.setattr(billing_store, "save_installment", flaky_save)
    result = billing_service.change_due_day(billing.id, 20, today=date(2024, 1, 1))
    monkeypatch.undo()

    assert result.is_partial
    assert result.updated == ids[:2]
    assert result.failed == [(ids[2], "row locked")]
    assert [r.due_date for r in schedule(billing.id)] == [
        date(2024, 1, 20),
        date(2024, 2, 20),
        date(2024, 3, 5),
    ]


def test_paid_requires_date_and_leaves_row_untouched(make_billing, recording_sync):
    _, rows = make_billing()

    with pytest.raises(ValidationError):
        billing_service.set_installment_status(rows[0].id, "paid")

    assert db.session.get(Installment, rows[0].id).status == InstallmentStatus.PENDING
    assert recording_sync.calls == []


def test_paid_transition_syncs_and_advances_billing(make_billing, recording_sync):
    billing, rows = make_billing()

    result = billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": date(2024, 1, 6)})

    assert result.changed
    assert result.old_status == InstallmentStatus.PENDING
    assert result.new_status == InstallmentStatus.PAID
    assert result.sync_warning is None
    assert db.session.get(BillingDefinition, billing.id).current_installment == 1

    ((installment_id, old, new, payload),) = recording_sync.calls
    assert (installment_id, old, new) == (rows[0].id, "pending", "paid")
    assert payload.payment_date == date(2024, 1, 6)
    assert payload.amount == Decimal("300.00")
    assert payload.client_id == billing.client_id


def test_delivery_based_payment_syncs_without_date(make_client, recording_sync):
    installment, warning = billing_service.create_one_time_payment(
        client_id=make_client().id,
        description="Print run",
        amount="80",
        delivery_based=True,
    )
    assert warning is None
    assert installment.due_date is None

    result = billing_service.set_installment_status(installment.id, "paid", {"delivery_based": True})

    assert result.changed
    assert recording_sync.calls[0][3].payment_date is None


def test_sync_failure_becomes_warning(make_billing, recording_sync):
    _, rows = make_billing()
    recording_sync.result = SyncResult(success=False, error="ledger offline")

    result = billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-01-05"})

    assert isinstance(result.sync_warning, SyncWarning)
    assert result.sync_warning.installment_id == rows[0].id
    assert "ledger offline" in str(result.sync_warning)
    assert db.session.get(Installment, rows[0].id).status == InstallmentStatus.PAID


def test_sync_exception_becomes_warning(make_billing, recording_sync):
    _, rows = make_billing()
    recording_sync.error = RuntimeError("boom")

    result = billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-01-05"})

    assert result.sync_warning is not None
    assert db.session.get(Installment, rows[0].id).status == InstallmentStatus.PAID


def test_default_ledger_records_cash_flow_entry(make_billing):
    _, rows = make_billing()
    billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-01-05"})

    entry = CashFlowEntry.query.filter_by(installment_id=rows[0].id).one()
    assert entry.amount == Decimal("300.00")
    assert entry.entry_date == date(2024, 1, 5)


def test_same_status_is_a_noop(make_billing, recording_sync):
    _, rows = make_billing()
    result = billing_service.set_installment_status(rows[0].id, "pending")
    assert not result.changed
    assert recording_sync.calls == []


def test_terminal_status_cannot_change(make_billing):
    _, rows = make_billing()
    billing_service.set_installment_status(rows[0].id, "cancelled")
    with pytest.raises(ValidationError):
        billing_service.set_installment_status(rows[0].id, "pending")


def test_unknown_status_fields_are_rejected(make_billing):
    _, rows = make_billing()
    with pytest.raises(ValidationError):
        billing_service.set_installment_status(rows[0].id, "billed", {"notes": "x"})


def test_partial_payment_amount_is_stored(make_billing):
    _, rows = make_billing()
    billing_service.set_installment_status(rows[0].id, "overdue")
    result = billing_service.set_installment_status(rows[0].id, "overdue", {"paid_amount": "120.50"})
    assert not result.changed
    assert db.session.get(Installment, rows[0].id).paid_amount == Decimal("120.50")


def test_settled_rows_keep_their_payment_details(make_billing, recording_sync):
    _, rows = make_billing()
    billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-01-05"})
    billing_service.set_installment_status(rows[1].id, "cancelled")

    with pytest.raises(ValidationError) as excinfo:
        billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-03-01"})
    assert excinfo.value.field == "payment_date"
    with pytest.raises(ValidationError):
        billing_service.set_installment_status(rows[0].id, "paid", {"delivery_based": True})
    with pytest.raises(ValidationError):
        billing_service.set_installment_status(rows[1].id, "cancelled", {"paid_amount": "10"})

    paid = db.session.get(Installment, rows[0].id)
    assert paid.payment_date == date(2024, 1, 5)
    assert not paid.delivery_based
    assert db.session.get(Installment, rows[1].id).paid_amount is None
    assert len(recording_sync.calls) == 1

    result = billing_service.set_installment_status(rows[0].id, "paid", {"paid_amount": "280.00"})
    assert not result.changed
    assert paid.paid_amount == Decimal("280.00")


def test_mark_overdue_installments(make_billing):
    _, rows = make_billing()
    billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-01-05"})

    result = billing_service.mark_overdue_installments(today=date(2024, 2, 20))

    assert result.updated == [rows[1].id]
    statuses = [r.status for r in schedule(rows[0].billing_definition_id)]
    assert statuses == [InstallmentStatus.PAID, InstallmentStatus.OVERDUE, InstallmentStatus.PENDING]


def test_mark_overdue_uses_configured_today(app, make_billing):
    make_billing()
    app.config["BILLING_TODAY_OVERRIDE"] = "2024-04-01"
    result = billing_service.mark_overdue_installments()
    assert result.updated_count == 3


def test_deactivating_billing_cancels_open_installments(make_billing):
    billing, rows = make_billing()
    billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-01-05"})
    billing_service.set_installment_status(rows[1].id, "billed")

    billing, cancelled = billing_service.set_billing_active(billing.id, False)

    assert billing.status == BillingStatus.CANCELLED
    assert billing.effective_status == "inactive"
    assert [r.id for r in cancelled] == [rows[2].id]
    assert [r.status for r in schedule(billing.id)] == [
        InstallmentStatus.PAID,
        InstallmentStatus.BILLED,
        InstallmentStatus.CANCELLED,
    ]

    billing, cancelled = billing_service.set_billing_active(billing.id, True)
    assert billing.status == BillingStatus.PENDING
    assert cancelled == []


def test_billing_activity_accepts_status_words(make_billing):
    billing, rows = make_billing()

    billing, cancelled = billing_service.set_billing_active(billing.id, "inactive")
    assert billing.status == BillingStatus.CANCELLED
    assert len(cancelled) == 3

    billing, _ = billing_service.set_billing_active(billing.id, "Active")
    assert billing.status == BillingStatus.PENDING

    with pytest.raises(ValidationError) as excinfo:
        billing_service.set_billing_active(billing.id, "paused")
    assert excinfo.value.field == "status"
    assert billing.status == BillingStatus.PENDING


def test_delete_refused_while_settled_rows_exist(make_billing):
    billing, rows = make_billing()
    billing_service.set_installment_status(rows[0].id, "paid", {"payment_date": "2024-01-05"})

    with pytest.raises(DeletionRefusedError) as excinfo:
        billing_service.delete_billing_definition(billing.id)

    assert excinfo.value.blocking_installment_ids == [rows[0].id]
    assert len(schedule(billing.id)) == 3


def test_delete_billing_definition_removes_rows(make_billing):
    billing, _ = make_billing()
    billing_id = billing.id

    billing_service.delete_billing_definition(billing_id)

    assert db.session.get(BillingDefinition, billing_id) is None
    assert Installment.query.count() == 0


def test_unknown_ids_raise_not_found(app):
    with pytest.raises(NotFoundError):
        billing_service.set_installment_status(404, "paid")
    with pytest.raises(NotFoundError):
        billing_service.delete_billing_definition(404)


def test_one_time_payment_validation(make_client):
    client = make_client()
    with pytest.raises(ValidationError) as excinfo:
        billing_service.create_one_time_payment(client_id=client.id, description="Logo", amount="50")
    assert excinfo.value.field == "due_date"

    with pytest.raises(ValidationError):
        billing_service.create_one_time_payment(
            client_id=client.id,
            description="Logo",
            amount="50",
            due_date="2024-02-01",
            status="paid",
        )


def test_one_time_payment_created_as_paid_is_synced(make_client, recording_sync):
    client = make_client()
    installment, warning = billing_service.create_one_time_payment(
        client_id=client.id,
        description="Logo",
        amount="50",
        due_date="2024-02-01",
        status="paid",
        payment_date="2024-02-01",
        payment_method="boleto",
    )
    assert warning is None
    assert installment.billing_definition_id is None
    assert installment.payment_method == PaymentMethod.BOLETO
    ((installment_id, old, new, _),) = recording_sync.calls
    assert (installment_id, old, new) == (installment.id, None, "paid")


def test_project_billing_views_reads_from_store(make_client, make_billing):
    alice = make_client("Alice Corp")
    bob = make_client("Bob Services")
    make_billing(client=alice)
    billing_service.create_one_time_payment(
        client_id=alice.id, description="Extra hours", amount="90", due_date="2024-02-02"
    )
    billing_service.create_one_time_payment(
        client_id=bob.id, description="Logo", amount="50", due_date="2024-01-10"
    )

    closed = billing_service.project_billing_views(Scope.CLOSED, ViewMode.GROUPED)
    assert [(v.client_name, v.description) for v in closed] == [("Bob Services", "Logo")]

    everything = billing_service.project_billing_views("all", "grouped", ViewFilters.build(search="consult"))
    assert [(v.scope, v.client_name, v.installments) for v in everything] == [(Scope.OPEN, "Alice Corp", 3)]


def test_replacement_agreement_with_same_description_is_its_own_view(make_client, make_billing):
    alice = make_client("Alice Corp")
    old, _ = make_billing(client=alice)
    billing_service.set_billing_active(old.id, False)
    new, _ = make_billing(client=alice, amount="400.00", start_date=date(2024, 6, 1))
    billing_service.create_one_time_payment(
        client_id=alice.id, description="Extra hours", amount="90", due_date="2024-02-02"
    )

    views = billing_service.project_billing_views(Scope.OPEN, ViewMode.GROUPED)
    by_billing = {v.billing_definition_id: v for v in views}
    assert set(by_billing) == {old.id, new.id}
    assert by_billing[old.id].status == "cancelled"
    assert by_billing[new.id].status == "pending"
    assert by_billing[new.id].amount == Decimal("400.00")

    assert billing_service.project_billing_views(Scope.CLOSED, ViewMode.GROUPED) == []


def test_store_filters_by_client_and_scope(make_client, make_billing):
    alice = make_client("Alice Corp")
    bob = make_client("Bob Services")
    make_billing(client=alice)
    payment, _ = billing_service.create_one_time_payment(
        client_id=alice.id, description="Extra hours", amount="90", due_date="2024-02-02"
    )

    assert [r.id for r in billing_store.load_installments(client_id=alice.id, recurring=False)] == [payment.id]
    assert len(billing_store.load_installments(client_id=alice.id, recurring=True)) == 3
    assert billing_store.load_installments(client_id=bob.id) == []
    assert billing_store.load_billing_definitions(client_id=bob.id) == []
    with pytest.raises(ValidationError) as excinfo:
        billing_store.update_billing_definition(billing_store.load_billing_definitions()[0].id, {"client_id": bob.id})
    assert excinfo.value.field == "client_id"
    assert billing_store.load_billing_definitions(client_id=bob.id) == []
