"""Normalize the build server's heterogeneous JSON into :class:`BuildState`.

The server reports a paused-for-input build in several unrelated ways
depending on which plugins are installed. Each known shape gets its own
strategy; :data:`APPROVAL_STRATEGIES` fixes the order they are tried in and
the first strategy producing an approval wins.

Nothing here performs I/O. Every field read tolerates absence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from ..constants import (
    DEFAULT_APPROVAL_STAGE,
    INPUT_ACTION_CLASS_MARKER,
    PAUSED_PENDING_INPUT,
)
from ..contracts import ApprovalInfo, BuildPhase, BuildState, QueuedBuild
from ..errors import UpstreamParseError
from ..utils.urls import absolute_url, ensure_trailing_slash

_DESCRIBE_STATUS = {
    "SUCCESS": BuildPhase.SUCCESS,
    "FAILED": BuildPhase.FAILURE,
    "FAILURE": BuildPhase.FAILURE,
    "ABORTED": BuildPhase.ABORTED,
    "UNSTABLE": BuildPhase.UNSTABLE,
    "NOT_BUILT": BuildPhase.NOT_BUILT,
    "NOT_EXECUTED": BuildPhase.NOT_BUILT,
    "IN_PROGRESS": BuildPhase.BUILDING,
    "QUEUED": BuildPhase.QUEUED,
}

# The classic build API spells failure "FAILURE"; older plugins used "FAILED".
_CORE_RESULT = {
    "SUCCESS": BuildPhase.SUCCESS,
    "FAILURE": BuildPhase.FAILURE,
    "FAILED": BuildPhase.FAILURE,
    "ABORTED": BuildPhase.ABORTED,
    "UNSTABLE": BuildPhase.UNSTABLE,
    "NOT_BUILT": BuildPhase.NOT_BUILT,
}


@dataclass
class BuildDocuments:
    """Raw responses gathered for one build.

    ``describe`` is the pipeline description, ``pending_actions`` the pending
    input list, ``build`` the classic build JSON and ``input_api`` the classic
    input endpoint. Any of them may be missing.
    """

    build_url: str
    base_url: str
    describe: Any = None
    pending_actions: Any = None
    build: Any = None
    input_api: Any = None


class QueueItem(BaseModel):
    cancelled: bool = False
    why: Optional[str] = None
    executable: Optional[QueuedBuild] = None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _first_dict(items: Any) -> Optional[Dict[str, Any]]:
    for item in _as_list(items):
        if isinstance(item, dict):
            return item
    return None


def input_page_url(build_url: str, base_url: str) -> str:
    return absolute_url(f"{ensure_trailing_slash(build_url)}input/", base_url)


def _approval(
    docs: BuildDocuments,
    *,
    message: Any = None,
    proceed_text: Any = None,
    input_id: Any = None,
    proceed_url: Any = None,
    abort_url: Any = None,
) -> ApprovalInfo:
    return ApprovalInfo(
        message=_text(message),
        proceed_text=_text(proceed_text),
        id=_text(input_id),
        input_page_url=input_page_url(docs.build_url, docs.base_url),
        proceed_url=absolute_url(_text(proceed_url), docs.base_url),
        abort_url=absolute_url(_text(abort_url), docs.base_url),
    )


def _approval_from_action(docs: BuildDocuments, action: Dict[str, Any]) -> ApprovalInfo:
    return _approval(
        docs,
        message=action.get("message"),
        proceed_text=action.get("proceedText") or action.get("ok"),
        input_id=action.get("id"),
        proceed_url=action.get("proceedUrl"),
        abort_url=action.get("abortUrl"),
    )


def _paused_stage(describe: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for stage in _as_list(describe.get("stages")):
        if isinstance(stage, dict) and stage.get("status") == PAUSED_PENDING_INPUT:
            return stage
    return None


def describe_reports_pause(describe: Any) -> bool:
    """Whether a pipeline description says the run is waiting for input."""
    d = _as_dict(describe)
    link = _as_dict(_as_dict(d.get("_links")).get("pendingInputActions")).get("href")
    return (
        d.get("status") == PAUSED_PENDING_INPUT
        or _paused_stage(d) is not None
        or bool(link)
    )


# ----------------------------------------------------------------------
# Approval strategies, one per known response shape


def approval_from_describe(docs: BuildDocuments) -> Optional[ApprovalInfo]:
    if not describe_reports_pause(docs.describe):
        return None
    # The description alone proves the pause; details come from pending actions
    # when they were fetched.
    first = _first_dict(docs.pending_actions) or {}
    return _approval_from_action(docs, first)


def approval_from_pending_actions(docs: BuildDocuments) -> Optional[ApprovalInfo]:
    first = _first_dict(docs.pending_actions)
    if first is None:
        return None
    return _approval_from_action(docs, first)


def _is_input_action(action: Dict[str, Any]) -> bool:
    cls = str(action.get("_class") or "")
    return INPUT_ACTION_CLASS_MARKER in cls or "inputs" in action or "executions" in action


def _is_settled(execution: Dict[str, Any]) -> bool:
    return bool(execution.get("settled")) or execution.get("outcome") is not None


def approval_from_build_actions(docs: BuildDocuments) -> Optional[ApprovalInfo]:
    build = _as_dict(docs.build)
    building = bool(build.get("building"))
    for action in _as_list(build.get("actions")):
        if not isinstance(action, dict) or not _is_input_action(action):
            continue

        if "inputs" in action:
            first = _first_dict(action.get("inputs"))
            if first is not None:
                return _approval_from_action(docs, first)

        if "executions" in action:
            pending = [
                e
                for e in _as_list(action.get("executions"))
                if isinstance(e, dict) and not _is_settled(e)
            ]
            if pending:
                execution = pending[0]
                step_input = _as_dict(execution.get("input"))
                return _approval(
                    docs,
                    message=execution.get("message") or step_input.get("message"),
                    proceed_text=execution.get("proceedText") or step_input.get("ok"),
                    input_id=execution.get("id") or step_input.get("id"),
                    proceed_url=execution.get("proceedUrl"),
                    abort_url=execution.get("abortUrl"),
                )

        if "inputs" not in action and "executions" not in action and building:
            # Descriptor without details on a running build: still a pause.
            return _approval(docs)
    return None


def approval_from_input_api(docs: BuildDocuments) -> Optional[ApprovalInfo]:
    doc = docs.input_api
    items = doc if isinstance(doc, list) else _as_dict(doc).get("inputs")
    first = _first_dict(items)
    if first is None:
        return None
    return _approval_from_action(docs, first)


ApprovalStrategy = Callable[[BuildDocuments], Optional[ApprovalInfo]]

APPROVAL_STRATEGIES: Tuple[ApprovalStrategy, ...] = (
    approval_from_describe,
    approval_from_pending_actions,
    approval_from_build_actions,
    approval_from_input_api,
)


def find_approval(docs: BuildDocuments) -> Optional[ApprovalInfo]:
    for strategy in APPROVAL_STRATEGIES:
        approval = strategy(docs)
        if approval is not None:
            return approval
    return None


# ----------------------------------------------------------------------
# Phase mapping


def map_describe_status(status: Optional[str]) -> BuildPhase:
    return _DESCRIBE_STATUS.get(str(status or "").upper(), BuildPhase.UNKNOWN)


def map_core_result(result: Optional[str]) -> BuildPhase:
    return _CORE_RESULT.get(str(result or "").upper(), BuildPhase.UNKNOWN)


def _current_stage(describe: Dict[str, Any]) -> Optional[str]:
    for stage in _as_list(describe.get("stages")):
        if isinstance(stage, dict) and stage.get("status") == "IN_PROGRESS":
            return _text(stage.get("name"))
    return None


def extract_build_state(docs: BuildDocuments) -> BuildState:
    """Combine all available documents into a single :class:`BuildState`."""
    describe = docs.describe if isinstance(docs.describe, dict) else None
    build = docs.build if isinstance(docs.build, dict) else None

    approval = find_approval(docs)
    if approval is not None:
        paused = _paused_stage(describe) if describe else None
        return BuildState(
            phase=BuildPhase.AWAITING_APPROVAL,
            raw_status=_text(describe.get("status")) if describe else PAUSED_PENDING_INPUT,
            stage=_text(paused.get("name")) if paused else DEFAULT_APPROVAL_STAGE,
            approval=approval,
        )

    if describe is not None and "status" in describe:
        raw = _text(describe.get("status")) or BuildPhase.UNKNOWN.value
        phase = map_describe_status(raw)
        return BuildState(
            phase=phase,
            raw_status=raw,
            stage=None if phase.is_terminal else _current_stage(describe),
        )

    if build is not None:
        if build.get("building"):
            return BuildState(phase=BuildPhase.BUILDING, raw_status="IN_PROGRESS")
        result = _text(build.get("result"))
        if result:
            return BuildState(phase=map_core_result(result), raw_status=result)
        return BuildState(phase=BuildPhase.UNKNOWN)

    if describe is not None:
        return BuildState(phase=BuildPhase.UNKNOWN)

    raise UpstreamParseError(f"No recognizable build document for {docs.build_url}")


def parse_queue_item(doc: Any, base_url: str) -> QueueItem:
    """Read a queue item; ``executable`` is set once a build was assigned."""
    if not isinstance(doc, dict):
        raise UpstreamParseError("Queue item response is not a JSON object")
    executable = _as_dict(doc.get("executable"))
    build_url = absolute_url(_text(executable.get("url")), base_url)
    number = executable.get("number")
    return QueueItem(
        cancelled=bool(doc.get("cancelled")),
        why=_text(doc.get("why")),
        executable=(
            QueuedBuild(
                build_url=ensure_trailing_slash(build_url),
                build_number=number if isinstance(number, int) else None,
            )
            if build_url
            else None
        ),
    )


def parse_crumb(doc: Any) -> Optional[Tuple[str, str]]:
    """Return ``(header, value)`` from a crumb issuer response, if present."""
    d = _as_dict(doc)
    field = _text(d.get("crumbRequestField"))
    crumb = _text(d.get("crumb"))
    if field and crumb:
        return field, crumb
    return None
