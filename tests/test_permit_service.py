"""Tests for the permit lifecycle manager against the SQLite store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from dcpermit.app.data_store import (
    PermitNotFoundError,
    StoreConnectivityError,
    StoreConstraintError,
)
from dcpermit.app.document_ids import DocumentIdAllocator
from dcpermit.app.permit_drafts import DraftAlreadySubmittedError, PermitDraft
from dcpermit.app.permit_models import PermitValidationError
from dcpermit.app.permit_service import (
    LOAD_SOURCE_CACHE,
    LOAD_SOURCE_EMPTY,
    LOAD_SOURCE_PRIMARY,
    PermitLifecycleManager,
    PermitOperationInProgressError,
)

from conftest import NOW


class _StoreProxy:
    """Wraps a real store; individual calls can be made to fail."""

    def __init__(self, inner):
        self._inner = inner
        self.backend = inner.backend
        self.calls = []
        self.failures = {}

    def _call(self, name, *args):
        self.calls.append(name)
        failure = self.failures.get(name)
        if failure is not None:
            raise failure
        return getattr(self._inner, name)(*args)

    def list_permits(self):
        return self._call("list_permits")

    def fetch_permit(self, document_id):
        return self._call("fetch_permit", document_id)

    def count_permits(self, prefix):
        return self._call("count_permits", prefix)

    def insert_permit(self, row):
        return self._call("insert_permit", row)

    def replace_permit(self, document_id, row):
        return self._call("replace_permit", document_id, row)


@pytest.fixture
def proxy(sqlite_store):
    return _StoreProxy(sqlite_store)


@pytest.fixture
def proxied_manager(proxy, clock):
    return PermitLifecycleManager(proxy, clock=clock)


def _editable_fields(permit):
    return (
        permit.reason,
        permit.entry_date_time,
        permit.personnel,
        permit.equipment_in,
        permit.equipment_out,
    )


def test_create_then_fetch_all_returns_submitted_fields(manager, make_request):
    request = make_request()
    created = manager.create(request)
    assert created.document_id == "C2-67-0001"
    assert created.submission_timestamp == NOW
    assert created.record_id

    result = manager.fetch_all()
    assert result.ok
    assert result.source == LOAD_SOURCE_PRIMARY
    (loaded,) = result.permits
    assert loaded.document_id == created.document_id
    assert _editable_fields(loaded) == _editable_fields(request)


def test_free_text_is_stored_exactly_as_submitted(manager, make_request):
    request = make_request(
        reason="  Replace PSU\n",
        equipment_in="- Server A\n- Server B\n",
        equipment_out="\tFailed PSU  ",
    )
    manager.create(request)

    (loaded,) = manager.fetch_all().permits
    assert loaded.reason == "  Replace PSU\n"
    assert loaded.equipment_in == "- Server A\n- Server B\n"
    assert loaded.equipment_out == "\tFailed PSU  "
    assert _editable_fields(loaded) == _editable_fields(request)


def test_document_year_follows_the_site_calendar(sqlite_store, make_request):
    bangkok = timezone(timedelta(hours=7))
    new_year_night = datetime(2024, 12, 31, 18, 0, tzinfo=timezone.utc)
    manager = PermitLifecycleManager(
        sqlite_store,
        allocator=DocumentIdAllocator(sqlite_store.count_permits, calendar_timezone=bangkok),
        clock=lambda: new_year_night,
    )
    created = manager.create(make_request(entry_date_time=new_year_night + timedelta(hours=1)))
    assert created.document_id == "C2-68-0001"


def test_create_numbers_sequentially_within_a_year(manager, make_request, clock):
    assert manager.create(make_request()).document_id == "C2-67-0001"
    clock.advance(minutes=5)
    assert manager.create(make_request()).document_id == "C2-67-0002"
    assert [permit.document_id for permit in manager.permits] == ["C2-67-0002", "C2-67-0001"]


def test_create_merges_into_cache_without_fetch(proxied_manager, proxy, make_request):
    created = proxied_manager.create(make_request())
    assert "list_permits" not in proxy.calls
    assert proxied_manager.permits == (created,)
    assert proxied_manager.get_permit(created.document_id) == created


@pytest.mark.parametrize(
    "overrides",
    [
        {"personnel": ()},
        {"reason": ""},
        {"entry_date_time": None},
        {"entry_date_time": NOW - timedelta(days=1)},
    ],
)
def test_create_rejects_invalid_request_without_store_calls(proxied_manager, proxy, make_request, overrides):
    with pytest.raises(PermitValidationError):
        proxied_manager.create(make_request(**overrides))
    assert proxy.calls == []
    assert proxied_manager.permits == ()
    assert not proxied_manager.busy


def test_update_preserves_identity_and_replaces_fields(manager, make_request, clock):
    created = manager.create(make_request())
    clock.advance(hours=3)
    second_request = make_request(
        reason="Replace failed PSU",
        personnel=make_request().personnel[1:],
        equipment_out="Failed PSU S/N: 42",
    )
    updated = manager.update(created.document_id, second_request)

    assert updated.document_id == created.document_id
    assert updated.submission_timestamp == created.submission_timestamp
    assert updated.record_id == created.record_id
    assert _editable_fields(updated) == _editable_fields(second_request)

    (reloaded,) = manager.fetch_all().permits
    assert reloaded == updated


def test_update_unknown_document_raises_not_found(manager, make_request):
    with pytest.raises(PermitNotFoundError):
        manager.update("C2-67-0999", make_request())


def test_update_before_first_load_still_bounds_entry_time(sqlite_store, clock, make_request):
    created = PermitLifecycleManager(sqlite_store, clock=clock).create(make_request())
    clock.advance(days=2)

    fresh_session = PermitLifecycleManager(sqlite_store, clock=clock)
    with pytest.raises(PermitValidationError):
        fresh_session.update(
            created.document_id,
            make_request(entry_date_time=created.submission_timestamp - timedelta(days=1)),
        )
    (stored,) = fresh_session.fetch_all().permits
    assert stored.entry_date_time == created.entry_date_time


def test_update_validates_before_touching_the_store(proxied_manager, proxy, make_request):
    created = proxied_manager.create(make_request())
    proxy.calls.clear()
    with pytest.raises(PermitValidationError):
        proxied_manager.update(created.document_id, make_request(personnel=()))
    assert proxy.calls == []


def test_get_permit_unknown_raises_not_found(manager):
    with pytest.raises(PermitNotFoundError):
        manager.get_permit("C2-67-0001")


def test_fetch_failure_on_first_load_returns_empty_with_warning(proxied_manager, proxy):
    proxy.failures["list_permits"] = StoreConnectivityError("offline")
    result = proxied_manager.fetch_all()
    assert result.permits == ()
    assert result.source == LOAD_SOURCE_EMPTY
    assert "offline" in result.warning
    assert proxied_manager.last_warning == result.warning
    assert proxied_manager.event_stream.tail(event_type="permits.load_failed")


def test_fetch_failure_keeps_last_known_list(proxied_manager, proxy, make_request):
    proxied_manager.create(make_request())
    first = proxied_manager.fetch_all()
    proxy.failures["list_permits"] = StoreConnectivityError("offline")
    second = proxied_manager.fetch_all()
    assert second.source == LOAD_SOURCE_CACHE
    assert second.permits == first.permits
    assert not second.ok


def test_fetch_all_replaces_cache_and_is_idempotent(manager, make_request):
    manager.create(make_request())
    first = manager.fetch_all()
    assert manager.fetch_all().permits == first.permits == manager.permits


def test_create_failure_leaves_cache_unchanged(proxied_manager, proxy, make_request):
    existing = proxied_manager.create(make_request())
    proxy.failures["insert_permit"] = StoreConnectivityError("timeout")
    with pytest.raises(StoreConnectivityError):
        proxied_manager.create(make_request(reason="Second visit"))
    assert proxied_manager.permits == (existing,)
    assert not proxied_manager.busy
    failures = proxied_manager.event_stream.tail(event_type="permit.save_failed")
    assert failures[-1].payload["operation"] == "create"


def test_update_failure_leaves_cache_unchanged(proxied_manager, proxy, make_request):
    existing = proxied_manager.create(make_request())
    proxy.failures["replace_permit"] = StoreConstraintError("rejected")
    with pytest.raises(StoreConstraintError):
        proxied_manager.update(existing.document_id, make_request(reason="Changed"))
    assert proxied_manager.get_permit(existing.document_id) == existing


def test_count_failure_falls_back_to_loaded_list(proxied_manager, proxy, make_request):
    proxied_manager.create(make_request())
    proxied_manager.fetch_all()
    proxy.failures["count_permits"] = StoreConnectivityError("offline")
    created = proxied_manager.create(make_request())
    assert created.document_id == "C2-67-0002"
    assert "collide" in proxied_manager.last_warning
    assert proxied_manager.event_stream.tail(event_type="document_id.fallback")


def test_reentrant_save_is_refused(proxy, clock, make_request):
    manager = PermitLifecycleManager(proxy, clock=clock)
    nested_errors = []
    real_insert = proxy.insert_permit

    def insert_and_reenter(row):
        try:
            manager.create(make_request())
        except PermitOperationInProgressError as exc:
            nested_errors.append(exc)
        return real_insert(row)

    proxy.insert_permit = insert_and_reenter
    manager.create(make_request())
    assert len(nested_errors) == 1
    assert len(manager.permits) == 1


def test_submit_new_and_edit_drafts(manager, make_request):
    draft = PermitDraft(make_request())
    created = manager.submit(draft)
    assert draft.submitted
    assert draft.result == created
    with pytest.raises(DraftAlreadySubmittedError):
        manager.submit(draft)

    edit = manager.edit_draft(created.document_id)
    assert edit.is_editing
    edit.set_fields(reason="Extended maintenance window")
    updated = manager.submit(edit)
    assert updated.document_id == created.document_id
    assert updated.reason == "Extended maintenance window"
    assert len(manager.permits) == 1


def test_concurrent_sessions_can_mint_the_same_document_id(sqlite_store, clock, make_request):
    """Known limitation: count-then-insert is not atomic across sessions.

    Both sessions read the same count, so both allocate C2-67-0001. The
    store's unique constraint rejects the second insert.
    """
    barrier = threading.Barrier(2, timeout=5)

    class _BarrierStore(_StoreProxy):
        def count_permits(self, prefix):
            count = super().count_permits(prefix)
            barrier.wait()
            return count

    sessions = [PermitLifecycleManager(_BarrierStore(sqlite_store), clock=clock) for _ in range(2)]
    outcomes = [None, None]

    def _submit(index):
        try:
            outcomes[index] = sessions[index].create(make_request())
        except StoreConstraintError as exc:
            outcomes[index] = exc

    threads = [threading.Thread(target=_submit, args=(index,)) for index in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    created = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, StoreConstraintError)]
    assert len(created) == 1
    assert len(rejected) == 1
    assert created[0].document_id == "C2-67-0001"
    assert "C2-67-0001" in str(rejected[0])
    assert [row["document_id"] for row in sqlite_store.list_permits()] == ["C2-67-0001"]
