"""Helpers for running independent fetches concurrently and cancelling loads."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Sequence

from .exceptions import OperationCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Flag checked between pipeline stages so superseded loads stop early."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Load was superseded")


def gather(
    calls: Sequence[Callable[[], Any]],
    max_workers: int = 8,
    token: Optional[CancellationToken] = None,
    return_exceptions: bool = False,
) -> List[Any]:
    """
    Run ``calls`` concurrently and wait for all of them.

    Results are returned in the order of ``calls``. With
    ``return_exceptions=True`` a failed call contributes its exception to the
    result list; otherwise the first failure (in call order) is raised once
    every call has finished. Calls not yet started when ``token`` is cancelled
    are skipped and ``OperationCancelled`` is raised.
    """
    if token is not None:
        token.raise_if_cancelled()
    if not calls:
        return []

    def guarded(call: Callable[[], Any]) -> Any:
        if token is not None:
            token.raise_if_cancelled()
        return call()

    workers = max(1, min(max_workers, len(calls)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(guarded, call) for call in calls]
        outcomes: List[Any] = []
        for future in futures:
            error = future.exception()
            outcomes.append(error if error is not None else future.result())

    if token is not None:
        token.raise_if_cancelled()

    if not return_exceptions:
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
    return outcomes
