from __future__ import annotations

from typing import Any, Callable

from PySide6.QtCore import QObject, QRunnable, QThreadPool, Signal

from dcpermit.app.data_store import (
    PermitNotFoundError,
    StoreConnectivityError,
    StoreConstraintError,
)
from dcpermit.app.permit_drafts import DraftAlreadySubmittedError, PermitDraft
from dcpermit.app.permit_models import PermitValidationError
from dcpermit.app.permit_service import (
    PermitLifecycleManager,
    PermitOperationInProgressError,
)


ERROR_KIND_VALIDATION = "validation"
ERROR_KIND_CONNECTIVITY = "connectivity"
ERROR_KIND_CONSTRAINT = "constraint"
ERROR_KIND_NOT_FOUND = "not_found"
ERROR_KIND_BUSY = "busy"
ERROR_KIND_ALREADY_SUBMITTED = "already_submitted"
ERROR_KIND_UNEXPECTED = "unexpected"

_TASK_LOAD = "load"
_TASK_SAVE = "save"


def classify_error(exc: BaseException) -> str:
    if isinstance(exc, PermitValidationError):
        return ERROR_KIND_VALIDATION
    if isinstance(exc, PermitNotFoundError):
        return ERROR_KIND_NOT_FOUND
    if isinstance(exc, StoreConstraintError):
        return ERROR_KIND_CONSTRAINT
    if isinstance(exc, StoreConnectivityError):
        return ERROR_KIND_CONNECTIVITY
    if isinstance(exc, DraftAlreadySubmittedError):
        return ERROR_KIND_ALREADY_SUBMITTED
    if isinstance(exc, PermitOperationInProgressError):
        return ERROR_KIND_BUSY
    return ERROR_KIND_UNEXPECTED


class _TaskSignals(QObject):
    # generation, task name, result
    succeeded = Signal(int, str, object)
    # generation, task name, error kind, message
    failed = Signal(int, str, str, str)


class _PermitTask(QRunnable):
    def __init__(
        self,
        *,
        generation: int,
        name: str,
        work: Callable[[], Any],
        signals: _TaskSignals,
    ) -> None:
        super().__init__()
        self._generation = generation
        self._name = name
        self._work = work
        self._signals = signals

    def run(self) -> None:
        try:
            result = self._work()
        except Exception as exc:
            self._signals.failed.emit(self._generation, self._name, classify_error(exc), str(exc))
            return
        self._signals.succeeded.emit(self._generation, self._name, result)


class PermitTaskRunner(QObject):
    """Runs lifecycle calls off the UI thread and reports back through signals.

    Only one save runs at a time. ``discard_pending`` drops the results of
    every request already started, for views that are no longer shown; a
    discarded save still holds the busy flag until its write finishes.
    """

    busyChanged = Signal(bool)
    permitsLoaded = Signal(object)
    permitSaved = Signal(object)
    operationFailed = Signal(str, str)

    def __init__(
        self,
        manager: PermitLifecycleManager,
        *,
        thread_pool: QThreadPool | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._manager = manager
        self._pool = thread_pool or QThreadPool.globalInstance()
        self._generation = 0
        self._save_in_progress = False
        self._signals = _TaskSignals(self)
        self._signals.succeeded.connect(self._on_task_succeeded)
        self._signals.failed.connect(self._on_task_failed)

    @property
    def manager(self) -> PermitLifecycleManager:
        return self._manager

    @property
    def busy(self) -> bool:
        return self._save_in_progress

    def load_permits(self) -> None:
        self._start(_TASK_LOAD, self._manager.fetch_all)

    def submit_draft(self, draft: PermitDraft) -> bool:
        if self._save_in_progress:
            self.operationFailed.emit(ERROR_KIND_BUSY, "A work permit is already being saved.")
            return False
        if not draft.can_submit:
            self.operationFailed.emit(
                ERROR_KIND_VALIDATION,
                "Reason, entry date and time, and at least one person are required.",
            )
            return False
        self._set_busy(True)
        self._start(_TASK_SAVE, lambda: self._manager.submit(draft))
        return True

    def discard_pending(self) -> None:
        self._generation += 1

    def _start(self, name: str, work: Callable[[], Any]) -> None:
        task = _PermitTask(
            generation=self._generation,
            name=name,
            work=work,
            signals=self._signals,
        )
        self._pool.start(task)

    def _on_task_succeeded(self, generation: int, name: str, result: object) -> None:
        if name == _TASK_SAVE:
            self._set_busy(False)
        if generation != self._generation:
            return
        if name == _TASK_LOAD:
            self.permitsLoaded.emit(result)
        else:
            self.permitSaved.emit(result)

    def _on_task_failed(self, generation: int, name: str, kind: str, message: str) -> None:
        if name == _TASK_SAVE:
            self._set_busy(False)
        if generation != self._generation:
            return
        self.operationFailed.emit(kind, message)

    def _set_busy(self, value: bool) -> None:
        if self._save_in_progress == value:
            return
        self._save_in_progress = value
        self.busyChanged.emit(value)
