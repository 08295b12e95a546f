# SPDX-License-Identifier: Apache-2.0
"""Consent versioning engine: versions, forced choices, receipts."""
import json

import pytest

from consentlab.core.exceptions import NotFoundError
from consentlab.core.security import sha256_hex
from consentlab.database import Store
from consentlab.models import Consent, ConsentChoice
from consentlab.schemas import CategoryEdit, StudyCreate, StudyUpdate
from consentlab.services.audit_service import list_audit
from consentlab.services.category_service import list_categories
from consentlab.services.consent_service import (
    choices_for,
    consent_history,
    diff_versions,
    get_consent_version,
    latest_consent,
    receipt_for_download,
    record_decision,
    verify_receipt,
    withdraw,
)
from consentlab.services.study_service import create_study, get_study_by_slug, update_study
from sqlmodel import select


def _cats(session, study):
    email, logs, accel = list_categories(session, study.id)
    return email, logs, accel


def test_scenario_consent_then_withdraw(session, make_study):
    study = make_study()
    email, logs, accel = _cats(session, study)

    v1 = record_decision(session, study, "p1", {email.id: True, accel.id: False})
    assert v1.version == 1
    assert v1.granted is True
    assert v1.withdrawn_at is None
    assert choices_for(session, v1.id) == {email.id: True, logs.id: True, accel.id: False}

    v2 = withdraw(session, study, "p1")
    assert v2.version == 2
    assert v2.granted is False
    assert v2.withdrawn_at is not None
    assert choices_for(session, v2.id) == {email.id: False, logs.id: False, accel.id: False}

    again = get_consent_version(session, study.id, "p1", 1)
    assert again.id == v1.id
    assert again.receipt_hash == v1.receipt_hash
    assert choices_for(session, again.id) == {email.id: True, logs.id: True, accel.id: False}
    assert verify_receipt(again)


def test_versions_are_gapless_across_withdrawals(session, make_study):
    study = make_study()
    email, _, _ = _cats(session, study)
    versions = [
        record_decision(session, study, "p1", {email.id: True}).version,
        withdraw(session, study, "p1").version,
        record_decision(session, study, "p1", {}).version,
        withdraw(session, study, "p1").version,
        record_decision(session, study, "p1", {email.id: False}).version,
    ]
    assert versions == [1, 2, 3, 4, 5]
    assert record_decision(session, study, "p2", {}).version == 1
    assert [c.version for c in consent_history(session, study.id, "p1")] == [5, 4, 3, 2, 1]
    assert latest_consent(session, study.id, "p1").version == 5


def test_required_category_forced_allowed(session, make_study):
    study = make_study()
    _, logs, _ = _cats(session, study)
    consent = record_decision(session, study, "p1", {logs.id: False})
    assert choices_for(session, consent.id)[logs.id] is True
    assert consent.granted is True


def test_foreign_category_ids_ignored(session, make_study):
    study = make_study()
    other = make_study(title="Other")
    foreign = list_categories(session, other.id)[0]
    consent = record_decision(session, study, "p1", {foreign.id: True, 999999: True})
    choices = choices_for(session, consent.id)
    assert foreign.id not in choices
    assert set(choices) == {c.id for c in list_categories(session, study.id)}


def test_no_required_and_nothing_allowed_is_not_granted(session, make_study):
    from consentlab.schemas import CategoryInput

    study = make_study(categories=[CategoryInput(name="A"), CategoryInput(name="B"), CategoryInput(name="C")])
    assert record_decision(session, study, "p1", {}).granted is False


def test_receipt_body_and_hash(session, make_study):
    study = make_study()
    email, _, accel = _cats(session, study)
    consent = record_decision(session, study, "p1", {email.id: True, accel.id: False})
    receipt = json.loads(consent.receipt_json)
    assert receipt["receipt_version"] == 1
    assert receipt["study"] == {"slug": study.slug, "title": "Sleep Study", "version": 1, "contact": "lab@example.org"}
    assert receipt["participant"] == {"pseudonymous_id": "p1"}
    assert receipt["decisions"] == [
        {"category": "Email", "allowed": True},
        {"category": "Logs", "allowed": True},
        {"category": "Accel", "allowed": False},
    ]
    assert receipt["retention"] == {"default_days": 30}
    assert receipt["withdrawal"] is None
    assert receipt["effective_at"].endswith("Z")
    assert receipt["receipt_hash"] == consent.receipt_hash
    assert consent.receipt_hash.startswith("sha256:")

    body = {k: v for k, v in receipt.items() if k != "receipt_hash"}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    assert consent.receipt_hash == "sha256:" + sha256_hex(canonical)


def test_withdrawal_receipt_carries_timestamp(session, make_study):
    study = make_study()
    receipt = json.loads(withdraw(session, study, "p1").receipt_json)
    assert receipt["withdrawal"] == receipt["effective_at"]
    assert all(d["allowed"] is False for d in receipt["decisions"])


def test_tampered_receipt_fails_verification(session, make_study):
    study = make_study()
    consent = record_decision(session, study, "p1", {})
    receipt = json.loads(consent.receipt_json)
    receipt["decisions"][0]["allowed"] = True
    consent.receipt_json = json.dumps(receipt)
    assert not verify_receipt(consent)


def test_every_stored_receipt_verifies(session, make_study):
    study = make_study()
    email, _, _ = _cats(session, study)
    for i in range(4):
        record_decision(session, study, f"p{i % 2}", {email.id: bool(i % 2)}, is_withdrawal=(i == 3))
    consents = session.exec(select(Consent).where(Consent.study_id == study.id)).all()
    assert len(consents) == 4
    assert all(verify_receipt(c) for c in consents)


def test_audit_actions_per_decision(session, make_study):
    study = make_study()
    record_decision(session, study, "p1", {})
    record_decision(session, study, "p1", {})
    withdraw(session, study, "p1")
    actions = [e.action for e in list_audit(session, study.id)]
    assert actions == ["STUDY_CREATED", "CONSENT_GIVEN", "CONSENT_EDITED", "WITHDRAWN"]
    given = json.loads(list_audit(session, study.id)[1].details)
    assert given["version"] == 1
    assert len(given["decisions"]) == 3


def test_failed_audit_rolls_back_consent(session, make_study, monkeypatch):
    study = make_study()

    def boom(*args, **kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr("consentlab.services.consent_service.append_audit", boom)
    with pytest.raises(RuntimeError):
        record_decision(session, study, "p1", {})
    assert session.exec(select(Consent)).all() == []
    assert session.exec(select(ConsentChoice)).all() == []


def test_diff_versions(session, make_study):
    study = make_study()
    email, logs, accel = _cats(session, study)
    record_decision(session, study, "p1", {email.id: True, accel.id: True})
    record_decision(session, study, "p1", {email.id: True, accel.id: False})
    rows = {r["name"]: r for r in diff_versions(session, study, "p1", 1, 2)}
    assert rows["Email"]["changed"] is False
    assert rows["Logs"] == {"category_id": logs.id, "name": "Logs", "a": "allowed", "b": "allowed", "changed": False}
    assert rows["Accel"]["a"] == "allowed"
    assert rows["Accel"]["b"] == "denied"
    assert rows["Accel"]["changed"] is True
    with pytest.raises(NotFoundError):
        diff_versions(session, study, "p1", 1, 7)


def test_receipt_download_is_audited(session, make_study):
    study = make_study()
    with pytest.raises(NotFoundError):
        receipt_for_download(session, study, "p1")
    record_decision(session, study, "p1", {})
    record_decision(session, study, "p1", {})
    assert receipt_for_download(session, study, "p1").version == 2
    assert receipt_for_download(session, study, "p1", 1).version == 1
    downloads = [json.loads(e.details) for e in list_audit(session, study.id) if e.action == "RECEIPT_DOWNLOADED"]
    assert downloads == [{"format": "json", "version": 2}, {"format": "json", "version": 1}]


def test_receipt_reflects_edit_committed_after_study_was_loaded(tmp_path):
    store = Store(f"sqlite:///{tmp_path / 'stale.db'}")
    store.init()
    with store.session() as session:
        study = create_study(
            session,
            "researcher-1",
            StudyCreate(title="Before", summary="s", purpose="p", contact_email="lab@example.org"),
        )
        loaded = get_study_by_slug(session, study.slug)
        session.commit()

        with store.session() as editor:
            fresh = get_study_by_slug(editor, study.slug)
            cats = list_categories(editor, fresh.id)
            update_study(
                editor,
                fresh,
                "researcher-1",
                StudyUpdate(
                    title="After",
                    summary="s",
                    purpose="p",
                    contact_email="lab@example.org",
                    status="public",
                    categories=[CategoryEdit(id=c.id, name=c.name, required=c.required) for c in cats],
                ),
            )

        consent = record_decision(session, loaded, "p1", {})
        receipt = json.loads(consent.receipt_json)
        assert receipt["study"]["title"] == "After"
        assert receipt["study"]["version"] == 2
        assert verify_receipt(consent)
    store.close()
