"""
tests/test_payment_events.py — Payment Webhook Event Processing
=================================================================
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import get_user, make_project, make_user
from dopaya.database.models import Donation, PaymentEvent
from dopaya.services.payment_events import (
    PAYMENT_SUCCEEDED,
    PaymentMetadata,
    process_payment_event,
)
from dopaya.services.store import StoreUnavailable


def _metadata(user_id, project_id, **overrides):
    meta = {
        "userId": str(user_id),
        "projectId": str(project_id),
        "supportAmount": "50",
        "tipAmount": "5",
    }
    meta.update(overrides)
    return meta


def _event_row(engine, event_id):
    with Session(engine) as session:
        return session.get(PaymentEvent, event_id)


def _donation_count(engine):
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(Donation))


class TestPaymentMetadata:
    def test_parses_string_values(self):
        meta = PaymentMetadata.model_validate(_metadata(7, 3))
        assert meta.user_id == "7"
        assert meta.project_id == 3
        assert meta.support_amount == 50.0
        assert meta.tip_amount == 5.0
        assert meta.impact_points is None

    def test_blank_optional_fields_are_missing(self):
        meta = PaymentMetadata.model_validate(_metadata(7, 3, tipAmount="", impactPoints=" "))
        assert meta.tip_amount is None
        assert meta.impact_points is None

    def test_numeric_user_id_is_accepted(self):
        assert PaymentMetadata.model_validate(_metadata(7, 3) | {"userId": 7}).user_id == "7"

    @pytest.mark.parametrize("override", [
        {"supportAmount": "0"},
        {"supportAmount": "abc"},
        {"projectId": "-1"},
        {"userId": ""},
        {"tipAmount": "-2"},
    ])
    def test_invalid_values(self, override):
        with pytest.raises(ValueError):
            PaymentMetadata.model_validate(_metadata(7, 3, **override))


class TestProcessPaymentEvent:
    def test_creates_donation_and_credits_points(self, store, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)

        result = process_payment_event(
            store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, pid),
        )

        assert result.status == "processed"
        assert not result.was_duplicate
        donation = result.donation.donation
        assert donation.payment_reference == "pi_1"
        assert donation.tip_amount == 5.0
        assert get_user(db_engine, uid).impact_points == 500

        row = _event_row(db_engine, "evt_1")
        assert row.status == "processed"
        assert row.processed_at is not None

    def test_redelivered_event_is_processed_once(self, store, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)

        process_payment_event(store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, pid))
        again = process_payment_event(
            store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, pid),
        )

        assert again.was_duplicate
        assert again.status == "processed"
        assert _donation_count(db_engine) == 1
        assert get_user(db_engine, uid).impact_points == 500
        assert _event_row(db_engine, "evt_1").attempts == 2

    def test_two_events_same_payment_record_one_donation(self, store, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)

        process_payment_event(store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, pid))
        second = process_payment_event(
            store, "evt_2", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, pid),
        )

        assert second.status == "processed"
        assert second.was_duplicate
        assert _donation_count(db_engine) == 1
        assert get_user(db_engine, uid).impact_points == 500

    def test_other_event_types_are_not_handled(self, store, db_engine):
        result = process_payment_event(store, "evt_x", "charge.refunded", "pi_1", {})
        assert result.status == "unhandled"
        assert _event_row(db_engine, "evt_x") is None

    def test_invalid_metadata_is_ignored(self, store, db_engine):
        result = process_payment_event(
            store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", {"userId": "1"},
        )
        assert result.status == "ignored"
        assert "projectId" in result.reason
        assert _event_row(db_engine, "evt_1").status == "ignored"
        assert _donation_count(db_engine) == 0

    def test_unknown_user_is_ignored(self, store, db_engine):
        pid = make_project(db_engine)
        result = process_payment_event(
            store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(4242, pid),
        )
        assert result.status == "ignored"
        assert "unknown user" in result.reason

    def test_unknown_project_is_ignored(self, store, db_engine):
        uid = make_user(db_engine)
        result = process_payment_event(
            store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, 999),
        )
        assert result.status == "ignored"
        assert _donation_count(db_engine) == 0

    def test_auth_uuid_resolves_user(self, store, db_engine):
        auth_id = "3f1c2a9e-0b7d-4c55-9a51-6f0e3e2d9b11"
        uid = make_user(db_engine, auth_user_id=auth_id)
        pid = make_project(db_engine)

        result = process_payment_event(
            store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(auth_id, pid),
        )

        assert result.status == "processed"
        assert result.donation.donation.user_id == uid

    def test_precomputed_points_from_metadata(self, store, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        process_payment_event(
            store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, pid, impactPoints="123"),
        )
        assert get_user(db_engine, uid).impact_points == 123

    def test_missing_reference_falls_back_to_event_id(self, store, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        result = process_payment_event(store, "evt_9", PAYMENT_SUCCEEDED, None, _metadata(uid, pid))
        assert result.donation.donation.payment_reference == "evt_9"

    def test_store_outage_fails_event_then_redelivery_succeeds(self, store, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        boom = StoreUnavailable("insert_donation", RuntimeError("down"))

        with patch.object(store, "insert_donation", side_effect=boom):
            with pytest.raises(StoreUnavailable):
                process_payment_event(
                    store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, pid),
                )
        row = _event_row(db_engine, "evt_1")
        assert row.status == "failed"
        assert "down" in row.last_error

        result = process_payment_event(
            store, "evt_1", PAYMENT_SUCCEEDED, "pi_1", _metadata(uid, pid),
        )
        assert result.status == "processed"
        assert _donation_count(db_engine) == 1
        assert get_user(db_engine, uid).impact_points == 500
