"""Tests for the per-entity sync engine."""
import logging
import threading

import pytest

from conftest import offline
from homevisit_sync.core.errors import PermanentRemoteError, StorageError, TransientRemoteError
from homevisit_sync.models.patient import Patient
from homevisit_sync.models.protocol import VisitProtocol
from homevisit_sync.models.registry import EntityType
from homevisit_sync.models.sync import SyncAction, is_local_id
from homevisit_sync.models.visit import Visit, VisitStatus
from homevisit_sync.repositories.patients import PatientRepository
from homevisit_sync.repositories.protocols import ProtocolRepository
from homevisit_sync.repositories.visits import VisitRepository
from homevisit_sync.services.sync_engine import (
    SyncEngine,
    SyncOperation,
    SyncOutcome,
    SyncRunResult,
    classify,
)


@pytest.fixture()
def engines(store, remote):
    return {et: SyncEngine(et, store, remote) for et in EntityType}


def _cache_visit(store, visit_id="srv_v1", patient_id="srv_p1"):
    VisitRepository(store).cache_visits([{
        "id": visit_id, "patientId": patient_id, "scheduledTime": "2026-03-02T10:00:00",
    }])


class TestClassify:
    def test_operations(self):
        assert classify(Patient(id="local_patient_1", sync_action="CREATE")) is SyncOperation.REMOTE_CREATE
        assert classify(Patient(id="srv_1", sync_action="UPDATE")) is SyncOperation.REMOTE_UPDATE
        assert classify(Patient(id="local_patient_1", sync_action="UPDATE")) is SyncOperation.REMOTE_CREATE
        assert classify(Patient(id="srv_1", sync_action="DELETE")) is SyncOperation.REMOTE_DELETE
        assert classify(Patient(id="local_patient_1", sync_action="DELETE")) is SyncOperation.LOCAL_PURGE
        assert classify(Patient(id="srv_1", sync_action="MERGE")) is SyncOperation.INVALID

    def test_confirmed_create_is_never_resent(self):
        confirmed = dict(confirmed_server_id="srv_9")
        assert classify(Patient(id="local_patient_1", sync_action="CREATE", **confirmed)) is SyncOperation.CONFIRM_CREATE
        assert classify(Patient(id="local_patient_1", sync_action="UPDATE", **confirmed)) is SyncOperation.CONFIRM_CREATE
        assert classify(Patient(id="local_patient_1", sync_action="DELETE", **confirmed)) is SyncOperation.REMOTE_DELETE

    def test_outcome(self):
        assert SyncRunResult().outcome is SyncOutcome.SUCCESS
        assert SyncRunResult(success_count=2, fail_count=1).outcome is SyncOutcome.PARTIAL
        assert SyncRunResult(success_count=0, fail_count=1).outcome is SyncOutcome.FAILURE
        assert SyncRunResult(success_count=0, fail_count=1).should_retry


class TestSyncEngine:
    def test_empty_run_is_success(self, engines, remote):
        result = engines[EntityType.PATIENT].run()
        assert result.outcome is SyncOutcome.SUCCESS
        assert result.processed == 0
        assert remote.calls == []

    def test_create_remaps_local_id(self, store, engines, remote):
        patient = PatientRepository(store).create_patient("Anna Smith")
        result = engines[EntityType.PATIENT].run()
        assert result.success_count == 1
        assert store.get(Patient, patient.id) is None
        [synced] = store.list(Patient)
        assert not is_local_id(synced.id)
        assert synced.is_synced is True
        assert synced.sync_action is None
        # The server never sees a local id
        assert "id" not in remote.calls[0][2]

    def test_second_run_after_success_sends_nothing(self, store, engines, remote):
        PatientRepository(store).create_patient("Anna Smith")
        engines[EntityType.PATIENT].run()
        result = engines[EntityType.PATIENT].run()
        assert result.processed == 0
        assert len(remote.calls) == 1

    def test_update_of_synced_record(self, store, engines, remote):
        repo = PatientRepository(store)
        repo.cache_patients([{"id": "srv_p1", "fullName": "Anna Smith"}])
        repo.update_profile("srv_p1", phone_number="+1 555 0199")
        result = engines[EntityType.PATIENT].run()
        assert result.outcome is SyncOutcome.SUCCESS
        [(op, _, payload, server_id)] = remote.calls
        assert (op, server_id) == ("update", "srv_p1")
        assert payload["phoneNumber"] == "+1 555 0199"
        assert store.get(Patient, "srv_p1").is_synced is True

    def test_double_status_update_sends_latest_once(self, store, engines, remote):
        _cache_visit(store)
        visits = VisitRepository(store)
        visits.update_status("srv_v1", VisitStatus.IN_PROGRESS)
        visits.update_status("srv_v1", VisitStatus.COMPLETED)
        engines[EntityType.VISIT].run()
        updates = remote.calls_for("update", EntityType.VISIT)
        assert len(updates) == 1
        assert updates[0][2]["status"] == VisitStatus.COMPLETED

    def test_delete_of_synced_record(self, store, engines, remote):
        repo = PatientRepository(store)
        repo.cache_patients([{"id": "srv_p1", "fullName": "Anna Smith"}])
        repo.delete_patient("srv_p1")
        result = engines[EntityType.PATIENT].run()
        assert result.success_count == 1
        assert remote.calls_for("delete") == [("delete", EntityType.PATIENT, "srv_p1", "srv_p1")]
        assert store.get(Patient, "srv_p1") is None

    def test_local_only_delete_never_reaches_server(self, store, engines, remote):
        repo = PatientRepository(store)
        patient = repo.create_patient("Anna Smith")
        repo.delete_patient(patient.id)
        engines[EntityType.PATIENT].run()
        assert remote.calls == []
        assert store.list(Patient, include_deleted=True) == []

    def test_transient_failure_keeps_record_pending(self, store, engines, remote):
        patient = PatientRepository(store).create_patient("Anna Smith")
        remote.fail_with = offline
        result = engines[EntityType.PATIENT].run()
        assert result.outcome is SyncOutcome.FAILURE
        record = store.get(Patient, patient.id)
        assert record.full_name == "Anna Smith"
        assert record.action is SyncAction.CREATE
        assert record.fail_count == 1

        # Connectivity back: the retry converges to a single server record
        remote.fail_with = None
        result = engines[EntityType.PATIENT].run()
        assert result.outcome is SyncOutcome.SUCCESS
        assert len(remote.server[EntityType.PATIENT]) == 1
        assert store.pending_count(Patient) == 0

    def test_permanent_failure_is_retried_next_run(self, store, engines, remote):
        PatientRepository(store).create_patient("Anna Smith")
        remote.fail_with = lambda op, et, payload: PermanentRemoteError("400 invalid", status_code=400)
        engines[EntityType.PATIENT].run()
        engines[EntityType.PATIENT].run()
        assert len(remote.calls) == 2
        [record] = store.pending(Patient)
        assert record.fail_count == 2

    def test_partial_run_with_one_rejected_patient(self, store, engines, remote):
        repo = PatientRepository(store)
        for name in ("Anna", "Boris", "Clara"):
            repo.create_patient(name)

        def reject_boris(op, et, payload):
            if payload.get("fullName") == "Boris":
                return TransientRemoteError("503", status_code=503)

        remote.fail_with = reject_boris
        result = engines[EntityType.PATIENT].run()
        assert (result.success_count, result.fail_count) == (2, 1)
        assert result.outcome is SyncOutcome.PARTIAL
        [left] = store.pending(Patient)
        assert left.full_name == "Boris"
        assert is_local_id(left.id)
        assert left.fail_count == 1

    def test_edit_during_create_stays_pending(self, store, engines, remote):
        repo = PatientRepository(store)
        patient = repo.create_patient("Anna Smith")

        def edit_while_in_flight(op, et, payload):
            if op == "create":
                repo.update_profile(patient.id, phone_number="+1 555 0111")

        remote.on_call = edit_while_in_flight
        engines[EntityType.PATIENT].run()
        [record] = store.list(Patient)
        assert not is_local_id(record.id)
        assert record.phone_number == "+1 555 0111"
        assert record.is_synced is False
        assert record.action is SyncAction.UPDATE

        remote.on_call = None
        engines[EntityType.PATIENT].run()
        update = remote.calls_for("update")[-1]
        assert update[3] == record.id
        assert update[2]["phoneNumber"] == "+1 555 0111"
        assert store.pending_count(Patient) == 0

    def test_edit_during_update_stays_pending(self, store, engines, remote):
        repo = PatientRepository(store)
        repo.cache_patients([{"id": "srv_p1", "fullName": "Anna Smith"}])
        repo.update_profile("srv_p1", address="2 Elm St")

        def edit_while_in_flight(op, et, payload):
            repo.update_profile("srv_p1", address="3 Oak St")

        remote.on_call = edit_while_in_flight
        engines[EntityType.PATIENT].run()
        record = store.get(Patient, "srv_p1")
        assert record.address == "3 Oak St"
        assert record.is_synced is False

    def test_unknown_action_is_parked_after_one_failure(self, store, engines, remote):
        store.put(Patient(id="srv_p1", full_name="Anna", is_synced=False, sync_action="MERGE"))
        first = engines[EntityType.PATIENT].run()
        assert first.fail_count == 1

        second = engines[EntityType.PATIENT].run()
        assert second.outcome is SyncOutcome.SUCCESS
        assert second.processed == 0
        assert remote.calls == []
        record = store.get(Patient, "srv_p1")
        assert record.fail_count == 1
        assert "MERGE" in record.parked_reason
        # Still visible as unsynced work
        assert store.pending_count(Patient) == 1
        assert store.parked_count(Patient) == 1

    def test_edit_repairs_record_with_unknown_action(self, store, engines, remote):
        store.put(Patient(id="srv_p1", full_name="Anna", is_synced=False, sync_action="MERGE"))
        engines[EntityType.PATIENT].run()
        PatientRepository(store).update_profile("srv_p1", address="2 Elm St")
        result = engines[EntityType.PATIENT].run()
        assert result.success_count == 1
        assert remote.calls_for("update")[0][3] == "srv_p1"
        assert store.pending_count(Patient) == 0

    def test_identity_conflict_never_creates_twice(self, store, engines, remote):
        # FakeRemote hands out srv_patient_1 for the first create
        store.put(Patient(id="srv_patient_1", full_name="Someone Else", is_synced=True))
        patient = PatientRepository(store).create_patient("Anna Smith")

        results = [engines[EntityType.PATIENT].run() for _ in range(3)]
        assert [r.fail_count for r in results] == [1, 0, 0]
        assert len(remote.calls_for("create")) == 1
        record = store.get(Patient, patient.id)
        assert record.confirmed_server_id == "srv_patient_1"
        assert record.is_parked
        assert store.get(Patient, "srv_patient_1").full_name == "Someone Else"

    def test_released_conflict_applies_confirmed_id(self, store, engines, remote):
        store.put(Patient(id="srv_patient_1", full_name="Someone Else", is_synced=True))
        patient = PatientRepository(store).create_patient("Anna Smith")
        engines[EntityType.PATIENT].run()

        # Operator clears the clashing row and hands the record back
        store.delete(Patient, "srv_patient_1")
        assert store.release(Patient, patient.id) is True
        engines[EntityType.PATIENT].run()
        engines[EntityType.PATIENT].run()

        assert len(remote.calls_for("create")) == 1
        assert remote.calls_for("update")[-1][3] == "srv_patient_1"
        assert store.get(Patient, patient.id) is None
        record = store.get(Patient, "srv_patient_1")
        assert record.full_name == "Anna Smith"
        assert record.is_synced is True
        assert record.confirmed_server_id is None

    def test_remote_failure_log_names_the_kind(self, store, engines, remote, caplog):
        PatientRepository(store).create_patient("Anna Smith")
        remote.fail_with = lambda op, et, payload: PermanentRemoteError("400 invalid", status_code=400)
        with caplog.at_level(logging.WARNING, logger="homevisit_sync.services.sync_engine"):
            engines[EntityType.PATIENT].run()
        assert "permanent" in caplog.text

    def test_cancel_stops_between_records(self, store, engines, remote):
        repo = PatientRepository(store)
        for name in ("Anna", "Boris", "Clara"):
            repo.create_patient(name)
        cancel = threading.Event()
        remote.on_call = lambda op, et, payload: cancel.set()
        result = engines[EntityType.PATIENT].run(cancel_event=cancel)
        assert result.cancelled is True
        assert result.success_count == 1
        assert store.pending_count(Patient) == 2

    def test_storage_failure_aborts_run(self, store, engines, remote, monkeypatch):
        PatientRepository(store).create_patient("Anna Smith")

        def broken(*args, **kwargs):
            raise StorageError("disk I/O error")

        monkeypatch.setattr(store, "pending", broken)
        with pytest.raises(StorageError):
            engines[EntityType.PATIENT].run()
        assert remote.calls == []

    def test_storage_failure_mid_run_leaves_rest_untouched(self, store, engines, remote, monkeypatch):
        repo = PatientRepository(store)
        names = ["Anna", "Boris", "Clara"]
        for name in names:
            repo.create_patient(name)

        def reject_boris(op, et, payload):
            if payload.get("fullName") == "Boris":
                return TransientRemoteError("503", status_code=503)

        def broken(*args, **kwargs):
            raise StorageError("disk I/O error")

        remote.fail_with = reject_boris
        monkeypatch.setattr(store, "record_failure", broken)
        with pytest.raises(StorageError):
            engines[EntityType.PATIENT].run()

        sent = [call[2]["fullName"] for call in remote.calls_for("create")]
        assert sent[-1] == "Boris"
        done = set(sent[:-1])
        pending = store.pending(Patient)
        assert {p.full_name for p in pending} == set(names) - done
        for record in pending:
            assert is_local_id(record.id)
            assert record.action is SyncAction.CREATE
            assert record.fail_count == 0


class TestDependentEntities:
    def test_visit_then_protocol_created_offline(self, store, engines, remote, visit_time):
        visit = VisitRepository(store).add_unplanned_visit("srv_p1", visit_time)
        protocol = ProtocolRepository(store).update_field(visit.id, "complaints", "Headache")

        engines[EntityType.VISIT].run()
        [server_visit] = store.list(Visit)
        assert not is_local_id(server_visit.id)
        # Remap rewrote the reference without dirtying anything else
        local_protocol = store.get(VisitProtocol, protocol.id)
        assert local_protocol.visit_id == server_visit.id
        assert local_protocol.action is SyncAction.CREATE

        engines[EntityType.PROTOCOL].run()
        [create] = remote.calls_for("create", EntityType.PROTOCOL)
        assert create[2]["visitId"] == server_visit.id
        [server_protocol] = store.list(VisitProtocol)
        assert server_protocol.visit_id == server_visit.id
        assert server_protocol.is_synced is True

    def test_protocol_waits_for_unsynced_visit(self, store, engines, remote, visit_time):
        visit = VisitRepository(store).add_unplanned_visit("srv_p1", visit_time)
        protocol = ProtocolRepository(store).update_field(visit.id, "complaints", "Headache")

        result = engines[EntityType.PROTOCOL].run()
        assert result.outcome is SyncOutcome.FAILURE
        assert remote.calls == []
        assert store.get(VisitProtocol, protocol.id).fail_count == 1

    def test_patient_remap_rewrites_visits(self, store, engines, remote, visit_time):
        patient = PatientRepository(store).create_patient("Anna Smith")
        visit = VisitRepository(store).add_unplanned_visit(patient.id, visit_time)

        engines[EntityType.PATIENT].run()
        [server_patient] = store.list(Patient)
        local_visit = store.get(Visit, visit.id)
        assert local_visit.patient_id == server_patient.id

        engines[EntityType.VISIT].run()
        [create] = remote.calls_for("create", EntityType.VISIT)
        assert create[2]["patientId"] == server_patient.id

    def test_remap_notifies_dependent_observers(self, store, engines, visit_time):
        visit = VisitRepository(store).add_unplanned_visit("srv_p1", visit_time)
        ProtocolRepository(store).update_field(visit.id, "complaints", "Headache")
        seen = []
        store.subscribe(VisitProtocol, lambda records: seen.append([p.visit_id for p in records]))
        engines[EntityType.VISIT].run()
        assert is_local_id(seen[0][0])
        assert not is_local_id(seen[-1][0])
