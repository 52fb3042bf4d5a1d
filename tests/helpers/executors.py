from __future__ import annotations

import threading
from concurrent.futures import Executor, Future
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable


class RecordingExecutor(Executor):
    """Collects submitted refreshes so a test decides when they run."""

    def __init__(self) -> None:
        self.submitted: list[tuple[Callable[..., Any], tuple[Any, ...]]] = []
        self._lock = threading.Lock()

    def submit(
        self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any  # noqa: ARG002
    ) -> Future[Any]:
        with self._lock:
            self.submitted.append((fn, args))
        future: Future[Any] = Future()
        future.set_result(None)
        return future

    def run_pending(self) -> None:
        with self._lock:
            pending, self.submitted = self.submitted, []
        for fn, args in pending:
            fn(*args)
