"""Shared fixtures for unit tests."""

from typing import Dict, List, Optional

import pytest

from flowgate.contracts import ApprovalInfo, BuildPhase, BuildState, QueuedBuild

BASE = "https://ci.example.com"


def approval_state(build_url: str) -> BuildState:
    return BuildState(
        phase=BuildPhase.AWAITING_APPROVAL,
        raw_status="PAUSED_PENDING_INPUT",
        stage="Approval",
        approval=ApprovalInfo(message="Approve?", id="Gate", input_page_url=f"{build_url}input/"),
    )


class FakeBuildServer:
    """In-process stand-in for the build server client.

    Each job path is scripted with the final state (or an exception to raise)
    for its build; unscripted jobs succeed. A "gated" job pauses for approval
    and is approved later, so only a waiter that stops on approval sees the
    pause.
    """

    def __init__(self) -> None:
        self.base_url = BASE
        self.outcomes: Dict[str, object] = {}
        self.triggered: List[tuple] = []
        self.waited: List[tuple] = []
        self.responses: List[tuple] = []
        self.states: Dict[str, BuildState] = {}
        self.closed = False
        self._queue: Dict[str, str] = {}
        self._number = 0

    def script(self, job_path: str, outcome) -> None:
        if isinstance(outcome, BuildPhase):
            outcome = BuildState(phase=outcome)
        self.outcomes[job_path] = outcome

    async def trigger_job(self, job_path: str, parameters: Optional[Dict[str, str]] = None) -> str:
        self.triggered.append((job_path, dict(parameters or {})))
        self._number += 1
        queue_url = f"{BASE}/queue/item/{self._number}/"
        self._queue[queue_url] = job_path
        return queue_url

    async def resolve_queue_item(self, queue_url: str) -> QueuedBuild:
        job_path = self._queue[queue_url]
        number = int(queue_url.rstrip("/").rsplit("/", 1)[1])
        return QueuedBuild(build_url=f"{BASE}/job/{job_path}/{number}/", build_number=number)

    async def wait_for_build(self, build_url: str, *, stop_on_approval: bool) -> BuildState:
        self.waited.append((build_url, stop_on_approval))
        job_path = build_url[len(f"{BASE}/job/"):].rsplit("/", 2)[0]
        outcome = self.outcomes.get(job_path, BuildState(phase=BuildPhase.SUCCESS))
        if outcome == "gated":
            outcome = approval_state(build_url) if stop_on_approval else BuildState(phase=BuildPhase.SUCCESS)
        elif outcome == "approval":
            outcome = approval_state(build_url)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def get_build_state(self, build_url: str) -> BuildState:
        return self.states[build_url]

    async def respond_to_approval(self, approval: ApprovalInfo, *, proceed: bool = True) -> None:
        self.responses.append((approval.id, proceed))

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def build_server() -> FakeBuildServer:
    return FakeBuildServer()
