"""Console state shapes — the store tree and the working records kept beside it."""

import copy
from typing import Literal, TypedDict

Stage = Literal["meet", "analyze", "build", "verify"]
StageStatus = Literal["idle", "waiting", "active", "complete", "error"]
ExecutorMode = Literal["cloud", "local", "developer"]
GapSource = Literal["analyze", "verify"]

STAGES: tuple[Stage, ...] = ("meet", "analyze", "build", "verify")
STAGE_STATUSES: tuple[StageStatus, ...] = ("idle", "waiting", "active", "complete", "error")
EXECUTOR_MODES: tuple[ExecutorMode, ...] = ("cloud", "local", "developer")


class StageMetrics(TypedDict, total=False):
    primary: str
    secondary: str
    statusText: str


class StageRecord(TypedDict):
    status: StageStatus
    startTime: float | None
    endTime: float | None
    metrics: StageMetrics


class MeetingState(TypedDict):
    name: str
    iteration: int  # Starts at 1, bumped on every Fix & Rebuild round.
    info: dict | None  # { title, date, participants, summary, requirementCount }


class IssueRecord(TypedDict, total=False):
    number: int
    url: str
    title: str
    gapId: int | None


class DispatchProgress(TypedDict):
    inProgress: bool
    totalItems: int
    completedItems: int


class AppState(TypedDict):
    meeting: MeetingState
    stages: dict[str, StageRecord]
    activeStage: Stage | None
    detailPanelOpen: Stage | None
    requirements: list[str]  # Index + 1 is the canonical gap id. Immutable after Meet.
    epicIssue: dict  # { number, url }
    deployedUrl: str
    analysisPhase: str  # idle | extracting | selecting | analyzing | reviewed
    createdIssues: list[IssueRecord]
    dispatch: DispatchProgress


class GapItem(TypedDict, total=False):
    """One requirement's gap analysis result. Held by the gap board, not the store."""

    id: int
    requirement: str
    hasGap: bool
    gap: str
    currentState: str
    complexity: str  # Low | Medium | High (the service may also send Critical)
    estimatedEffort: str
    details: str
    selected: bool
    source: GapSource
    requirementIndex: int


class ValidationResult(TypedDict, total=False):
    requirementIndex: int
    requirement: str
    passed: bool
    details: str
    evidence: str
    message: str


def _stage_record() -> StageRecord:
    return {"status": "idle", "metrics": {}, "startTime": None, "endTime": None}


_INITIAL_STATE: AppState = {
    "meeting": {"name": "", "iteration": 1, "info": None},
    "stages": {stage: _stage_record() for stage in STAGES},
    "activeStage": None,
    "detailPanelOpen": None,
    "requirements": [],
    "epicIssue": {"number": 0, "url": ""},
    "deployedUrl": "",
    "analysisPhase": "idle",
    "createdIssues": [],
    "dispatch": {"inProgress": False, "totalItems": 0, "completedItems": 0},
}


def initial_state() -> AppState:
    """Return a fresh, independent copy of the default application state."""
    return copy.deepcopy(_INITIAL_STATE)
