import threading
import time

from rsc_errors import CanceledError, DeadlineExceededError


class Context:
    """
    Cancellation and deadline signal passed to every blocking call.

    A child context is done when its own deadline passes, when it is canceled
    or when any ancestor is done. Use children as context managers so they
    detach from their parent once the guarded call returns:

        with ctx.with_timeout(15) as attempt_ctx:
            do_request(attempt_ctx)
    """

    def __init__(self, *, parent=None, deadline: float | None = None, clock=None):
        self._parent = parent
        self._clock = clock or (parent._clock if parent is not None else time.monotonic)
        if parent is not None and parent._deadline is not None:
            deadline = parent._deadline if deadline is None else min(deadline, parent._deadline)
        self._deadline = deadline
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: set = set()
        self._reason = None

    @classmethod
    def background(cls, *, clock=None):
        return cls(clock=clock)

    def with_cancel(self):
        return self._child(None)

    def with_timeout(self, seconds: float):
        return self._child(self._clock() + max(float(seconds), 0.0))

    def with_deadline(self, deadline: float):
        return self._child(deadline)

    def _child(self, deadline):
        child = Context(parent=self, deadline=deadline)
        with self._lock:
            self._children.add(child)
        if self._event.is_set():
            child._cancel(self._reason)
        return child

    def detach(self) -> None:
        if self._parent is not None:
            with self._parent._lock:
                self._parent._children.discard(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.detach()
        return False

    def cancel(self) -> None:
        self._cancel(CanceledError("context canceled"))

    def _cancel(self, reason) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child._cancel(reason)

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - self._clock(), 0.0)

    def bounded(self, seconds: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return max(float(seconds), 0.0)
        return max(min(float(seconds), remaining), 0.0)

    def error(self):
        if self._event.is_set():
            return self._reason
        if self._deadline is not None and self._clock() >= self._deadline:
            return DeadlineExceededError("context deadline exceeded")
        if self._parent is not None:
            return self._parent.error()
        return None

    def done(self) -> bool:
        return self.error() is not None

    def raise_if_done(self) -> None:
        err = self.error()
        if err is not None:
            raise _fresh(err)

    def sleep(self, seconds: float) -> None:
        """Block for up to `seconds`; returns early when the context is done."""
        if self.done():
            return
        self._event.wait(timeout=self.bounded(seconds))


def _fresh(err):
    return type(err)(err.message)
