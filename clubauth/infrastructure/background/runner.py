# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Worker threads for blocking database calls.

Login, logout, password reset and coordinator changes all block on network
I/O and must not run on the UI thread. BackgroundRunner executes them on a
small thread pool and hands the result (or the exception) back through an
injected ``dispatch`` callable, which the UI toolkit implements as "run this
on the UI thread". Without a dispatcher callbacks run on the worker thread.

Example:
    runner = BackgroundRunner(dispatch=ui.call_soon, max_workers=2)
    runner.submit(
        auth.login, username, password,
        on_success=show_dashboard,
        on_error=show_error,
    )
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger(__name__)

Dispatch = Callable[[Callable[[], None]], None]


def _run_inline(callback: Callable[[], None]) -> None:
    callback()


class BackgroundRunner:
    """Thread pool with result hand-off to the UI thread.

    Attributes:
        _executor: Pool running the submitted work.
        _dispatch: Schedules callbacks on the UI thread.
    """

    def __init__(
        self,
        dispatch: Dispatch | None = None,
        max_workers: int = 2,
        thread_name_prefix: str = "clubauth-worker",
    ) -> None:
        self._dispatch = dispatch or _run_inline
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        on_success: Callable[[Any], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        **kwargs: Any,
    ) -> Future:
        """Run ``fn(*args, **kwargs)`` on a worker thread.

        Args:
            fn: Blocking callable.
            on_success: Receives the return value, via dispatch.
            on_error: Receives the raised exception, via dispatch.

        Returns:
            The underlying Future.
        """
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(
            lambda done: self._deliver(done, getattr(fn, "__name__", repr(fn)), on_success, on_error)
        )
        return future

    def _deliver(
        self,
        future: Future,
        name: str,
        on_success: Callable[[Any], None] | None,
        on_error: Callable[[BaseException], None] | None,
    ) -> None:
        if future.cancelled():
            logger.debug("Background task %s cancelled", name)
            return

        error = future.exception()
        if error is not None:
            logger.error("Background task %s failed: %s", name, error, exc_info=error)
            if on_error is not None:
                self._dispatch(lambda: on_error(error))
            return

        if on_success is not None:
            result = future.result()
            self._dispatch(lambda: on_success(result))

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and optionally wait for running tasks."""
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.debug("Background runner shut down")

    def __enter__(self) -> "BackgroundRunner":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)
