import enum
import logging
from typing import NamedTuple, Protocol

from rsc_context import Context
from rsc_errors import JobFailedError, ProtocolError, RSCError, ValidationError
from rsc_graphql import result

_LOG = logging.getLogger("rsc.tasks")

DEFAULT_POLL_INTERVAL_S = 10.0


class TaskChainState(enum.Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().upper()
        try:
            return cls(_IN_PROGRESS_ALIASES.get(raw, raw))
        except ValueError:
            raise ProtocolError(f"invalid task chain state: {value!r}") from None

    @property
    def terminal(self) -> bool:
        return self is not TaskChainState.RUNNING


# Wire states that only mean "not finished yet".
_IN_PROGRESS_ALIASES = {
    "READY": "RUNNING",
    "CANCELING": "RUNNING",
    "UNDOING": "RUNNING",
}


class CheckResult(NamedTuple):
    done: bool
    state: TaskChainState


class StatusCheck(Protocol):
    """
    Reads the current state of one job. Errors raised by a check end the wait
    immediately.
    """

    job_id: str

    def __call__(self, ctx: Context) -> CheckResult:
        ...


_TASKCHAIN_STATUS_QUERY = """query RscTaskchainStatus($taskchainId: String!) {
    result: getKorgTaskchainStatus(taskchainId: $taskchainId) {
        taskchain {
            id
            state
            taskchainUuid
        }
    }
}"""


class TaskChainStatusCheck:
    """Status check reading a task chain through the GraphQL endpoint."""

    def __init__(self, executor, job_id):
        self.executor = executor
        self.job_id = str(job_id)

    def __call__(self, ctx: Context) -> CheckResult:
        buf = self.executor.request(ctx, _TASKCHAIN_STATUS_QUERY, {"taskchainId": self.job_id})
        payload = result(buf, "getKorgTaskchainStatus")
        taskchain = (payload or {}).get("taskchain") if isinstance(payload, dict) else None
        if not isinstance(taskchain, dict):
            raise ProtocolError("response has no taskchain", operation="getKorgTaskchainStatus")
        state = TaskChainState.parse(taskchain.get("state"))
        return CheckResult(state.terminal, state)


class TaskChainTracker:
    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL_S, logger: logging.Logger | None = None):
        if poll_interval is None or poll_interval <= 0:
            raise ValidationError(f"poll interval must be > 0, got {poll_interval!r}")
        self.poll_interval = float(poll_interval)
        self._log = logger or _LOG

    def wait_for_completion(self, ctx: Context, check: StatusCheck) -> TaskChainState:
        """
        Poll `check` until it reports a terminal state.

        Returns TaskChainState.SUCCEEDED. Raises JobFailedError for FAILED and
        CANCELED, CanceledError when `ctx` is done before a terminal state is
        observed, and whatever the check raises on a failed status read. The
        context is the only bound on how long this waits.
        """
        job_id = getattr(check, "job_id", "")
        polls = 0
        while True:
            ctx.raise_if_done()
            polls += 1
            try:
                done, state = check(ctx)
            except RSCError as e:
                raise e.wrap("wait for task chain", job_id=job_id, polls=polls) from e
            state = TaskChainState.parse(state)

            if done:
                if not state.terminal:
                    raise ProtocolError(
                        f"check reported done with non-terminal state {state.value}",
                        operation="wait for task chain",
                        job_id=job_id,
                    )
                self._log.debug("Task chain %s finished: %s (polls: %d)", job_id, state.value, polls)
                if state is TaskChainState.SUCCEEDED:
                    return state
                raise JobFailedError(
                    "task chain did not succeed",
                    job_id=job_id,
                    state=state,
                    operation="wait for task chain",
                )

            self._log.debug("Waiting for task chain %s: %s (polls: %d)", job_id, state.value, polls)
            ctx.raise_if_done()
            ctx.sleep(self.poll_interval)
