"""Build flow — dispatch engine for the selected gap items.

Selected items are split by executor mode into up to three lanes that run
concurrently:

  cloud      create tracking issues, then assign the coding agent to them
  local      run the local agent directly (no issues)
  developer  create tracking issues and hand them to a human

Lanes settle independently. One failing lane never cancels the others; the
batch is only fatal when every lane failed. Ids that reach a non-failed
terminal state join the dispatch tracker, which only grows until a reset, so
``dispatch_remaining`` can be called again and again without re-dispatching.
"""

import asyncio
import sys
import time
from dataclasses import dataclass, field

from m2c.config import get_config
from m2c.errors import DispatchError, UserInputError
from m2c.event_bus import Events
from m2c.flows.analyze import GapBoard
from m2c.stage_controller import StageController
from m2c.state import EXECUTOR_MODES, GapItem
from m2c.store import Store
from m2c.utils.api import PipelineApi
from m2c.utils.matching import match_issue_to_gap
from m2c.utils.sse import ASSIGN_AGENT_EVENTS, CREATE_ISSUES_EVENTS, LOCAL_AGENT_EVENTS
from m2c.utils.validator import validate_executor

LOG_CHANNEL = "issueLogEntries"

MODE_LABELS = {"cloud": "Cloud", "local": "Local", "developer": "Developer"}

# Row lifecycle: queued → creating | working → assigning → assigned | implemented | failed
ROW_STATUS_LABELS = {
    "queued": "Queued",
    "creating": "In Progress",
    "working": "Working…",
    "assigning": "Assigning…",
    "assigned": "Assigned ✓",
    "implemented": "Implemented ✓",
    "failed": "Failed ✗",
}
TERMINAL_STATUSES = frozenset({"assigned", "implemented", "failed"})


@dataclass
class DispatchRow:
    gap_id: int
    mode: str
    status: str = "queued"
    issue: dict | None = None
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class DispatchReport:
    """Outcome of one dispatch batch."""

    dispatched: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    lane_errors: dict[str, str] = field(default_factory=dict)
    fatal: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.lane_errors) and not self.fatal


@dataclass
class DispatchSummary:
    dispatched: int
    assigned: int
    issue_count: int
    issues_url: str


class DispatchTracker:
    """Dispatched-id set plus the progress counters of the running batch."""

    def __init__(self):
        self._ids: set[int] = set()
        self.total = 0
        self.completed = 0

    def __contains__(self, gap_id: int) -> bool:
        return gap_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def ids(self) -> frozenset[int]:
        return frozenset(self._ids)

    def add(self, gap_ids) -> None:
        self._ids.update(gap_ids)

    def forget(self, gap_ids) -> None:
        """Only for verify-sourced items re-entering Build as fresh work."""
        self._ids.difference_update(gap_ids)

    def begin(self, total: int) -> None:
        self.total = total
        self.completed = 0

    def increment(self) -> int:
        self.completed += 1
        return self.completed

    def reset(self) -> None:
        self._ids.clear()
        self.total = 0
        self.completed = 0


def _gap_payload(gap: GapItem) -> dict:
    """The fields the service needs to act on a gap it may not have analyzed itself."""
    return {
        "id": gap["id"],
        "requirement": gap.get("requirement", ""),
        "gap": gap.get("gap", ""),
        "currentState": gap.get("currentState", ""),
        "details": gap.get("details", ""),
        "complexity": gap.get("complexity", "Medium"),
        "estimatedEffort": gap.get("estimatedEffort", ""),
        "source": gap.get("source", "analyze"),
    }


class BuildFlow:
    def __init__(
        self,
        store: Store,
        controller: StageController,
        api: PipelineApi,
        board: GapBoard,
        tracker: DispatchTracker | None = None,
    ):
        self.store = store
        self.controller = controller
        self.api = api
        self.board = board
        self.tracker = tracker or DispatchTracker()
        self.rows: dict[int, DispatchRow] = {}
        self.in_progress = False

    # --- Public entry points --------------------------------------------

    async def dispatch_selected(self, modes: dict[int, str] | None = None) -> DispatchReport | None:
        """Dispatch every selected gap, each to the lane named in ``modes``.

        Items missing from ``modes`` go to the configured default executor.
        Returns None when the request is rejected before anything starts.
        """
        modes = modes or {}
        default = get_config().get("default_executor", "local")
        selected = self.board.selected()
        if not selected:
            self.controller.advise("Please select at least one gap to dispatch.", "info")
            return None

        pending = [g for g in selected if g["id"] not in self.tracker]
        if not pending:
            self.controller.advise("All selected gaps have already been dispatched.", "info")
            return None

        partitions: dict[str, list[GapItem]] = {mode: [] for mode in EXECUTOR_MODES}
        try:
            for gap in pending:
                partitions[validate_executor(modes.get(gap["id"]), default)].append(gap)
        except UserInputError as exc:
            self.controller.advise(str(exc), "info")
            return None

        return await self._execute(partitions)

    async def dispatch_remaining(self) -> DispatchReport | None:
        """Send every actionable, not-yet-dispatched gap to the cloud lane."""
        remaining = [g for g in self.board.actionable() if g["id"] not in self.tracker]
        if not remaining:
            self.controller.advise("All requirements have been dispatched.", "info")
            return None

        for gap in remaining:
            gap["selected"] = True
        return await self._execute({"cloud": remaining, "local": [], "developer": []})

    def inject_verify_failures(self, verify_gaps: list[GapItem]) -> list[GapItem]:
        """Merge failed validations into the board as fresh, dispatchable gaps.

        Verify items from an earlier round are replaced. A failure whose
        requirement already has an open analyze gap is skipped.
        """
        kept = [g for g in self.board.all() if g.get("source") != "verify"]
        for gap in self.board.all():
            if gap.get("source") == "verify":
                self.rows.pop(gap["id"], None)

        open_requirements = {g["requirement"].strip() for g in kept if g.get("hasGap")}
        new_gaps = [g for g in verify_gaps if g["requirement"].strip() not in open_requirements]

        self.board.replace(kept + new_gaps)
        self.tracker.forget(g["id"] for g in new_gaps)
        return new_gaps

    def finish_dispatch(self) -> DispatchSummary:
        """Close out Build and summarize what went out."""
        actionable = self.board.actionable()
        dispatched = [g for g in actionable if g["id"] in self.tracker]
        assigned = [
            g for g in dispatched
            if g["id"] in self.rows and self.rows[g["id"]].status in ("assigned", "implemented")
        ]
        issues = self.store.get("createdIssues") or []
        issues_url = ""
        if issues and issues[-1].get("url"):
            # https://github.com/org/repo/issues/12 -> https://github.com/org/repo/issues
            issues_url = issues[-1]["url"].rsplit("/", 1)[0]

        self.controller.close_stage_detail()
        self.controller.show_panel("panel-complete")
        return DispatchSummary(
            dispatched=len(dispatched),
            assigned=len(assigned),
            issue_count=len(issues),
            issues_url=issues_url,
        )

    def dispatch_counts(self) -> dict:
        actionable = self.board.actionable()
        dispatched = sum(1 for g in actionable if g["id"] in self.tracker)
        percent = (dispatched / len(actionable) * 100) if actionable else 0.0
        return {"dispatched": dispatched, "remaining": len(actionable) - dispatched, "percent": percent}

    def reset(self) -> None:
        self.tracker.reset()
        self.rows = {}
        self.in_progress = False

    # --- Batch orchestration --------------------------------------------

    async def _execute(self, partitions: dict[str, list[GapItem]]) -> DispatchReport:
        controller = self.controller
        previous = dict(self.store.get("stages.build"))
        try:
            report = await self._run_batch(partitions)
        except DispatchError as exc:
            self.in_progress = False
            self.store.set("dispatch.inProgress", False)
            controller.advise(f"Dispatch failed: {exc}", "error")
            controller.set_status("Error", "error")
            # Back to the pre-dispatch card so the user can try again
            controller.update_loop_state({
                "stages": {"build": {
                    "status": previous["status"],
                    "metrics": {**previous.get("metrics", {}), "statusText": "Dispatch failed"},
                }},
            })
            failed = [gap_id for gap_id, row in self.rows.items() if row.status == "failed"]
            report = DispatchReport(failed=failed, lane_errors=exc.lane_errors, fatal=True)
            self._emit(Events.DISPATCH_COMPLETE, {"report": report})
            return report

        if report.partial:
            errors = "; ".join(f"{lane}: {err}" for lane, err in report.lane_errors.items())
            controller.advise(f"Partial dispatch failure ({errors}). Successful items were kept.", "warning")

        total = len(self.tracker)
        controller.set_status(f"{total} Dispatched")
        controller.mark_phase_completed("build")
        controller.set_active_phase("verify")
        controller.update_loop_state({
            "stages": {
                "build": {
                    "status": "complete",
                    "end_time": time.time(),
                    "metrics": {"primary": f"{total} dispatched", "statusText": "Complete ✓"},
                },
                "verify": {"status": "waiting", "metrics": {"primary": "Ship & Validate", "statusText": "Waiting..."}},
            },
        })
        self._emit(Events.DISPATCH_COMPLETE, {"report": report})
        return report

    async def _run_batch(self, partitions: dict[str, list[GapItem]]) -> DispatchReport:
        """Run the non-empty lanes to settlement. Raises DispatchError if all of them fail."""
        controller = self.controller
        items = [gap for mode in EXECUTOR_MODES for gap in partitions.get(mode, [])]

        for mode in EXECUTOR_MODES:
            for gap in partitions.get(mode, []):
                self.rows[gap["id"]] = DispatchRow(
                    gap_id=gap["id"],
                    mode=mode,
                    status="queued" if mode == "local" else "creating",
                )

        self.in_progress = True
        self.tracker.begin(len(items))
        self.store.set("dispatch", {"inProgress": True, "totalItems": len(items), "completedItems": 0})
        self._emit(Events.DISPATCH_STARTED, {
            "totalItems": len(items),
            "modes": {mode: [g["id"] for g in gaps] for mode, gaps in partitions.items() if gaps},
        })
        controller.set_status("Builder Dispatching...", "processing")
        controller.set_active_agent("builder")
        controller.set_active_phase("build")
        controller.update_loop_state({
            "active_stage": "build",
            "stages": {"build": {
                "status": "active",
                "start_time": time.time(),
                "metrics": {"primary": f"0/{len(items)} dispatched", "statusText": "Builder Running"},
            }},
        })

        lanes = {
            "cloud": self._cloud_lane,
            "local": self._local_lane,
            "developer": self._developer_lane,
        }
        running = [(mode, gaps) for mode, gaps in partitions.items() if gaps]
        outcomes = await asyncio.gather(
            *(lanes[mode](gaps) for mode, gaps in running),
            return_exceptions=True,
        )

        lane_errors: dict[str, str] = {}
        for (mode, gaps), outcome in zip(running, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                lane_errors[mode] = str(outcome) or type(outcome).__name__
                print(f"[M2C] {mode} lane failed: {outcome!r}", file=sys.stderr)
                self._log(f"{MODE_LABELS[mode]} lane failed: {lane_errors[mode]}")
                reason = lane_errors[mode]
            else:
                reason = "No result reported"
            for gap in gaps:
                if not self.rows[gap["id"]].is_terminal:
                    self._settle(gap["id"], "failed", reason)

        self.in_progress = False
        self.store.set("dispatch.inProgress", False)

        if len(lane_errors) == len(running):
            raise DispatchError(lane_errors)

        dispatched = [g["id"] for g in items if self.rows[g["id"]].status != "failed"]
        failed = [g["id"] for g in items if self.rows[g["id"]].status == "failed"]
        self.tracker.add(dispatched)
        return DispatchReport(dispatched=dispatched, failed=failed, lane_errors=lane_errors)

    # --- Row bookkeeping ------------------------------------------------

    def _log(self, message: str) -> None:
        self.controller.append_log(LOG_CHANNEL, message)

    def _emit(self, event: str, data: dict) -> None:
        self.controller.bus.emit(event, data)

    def _row_changed(self, row: DispatchRow) -> None:
        self._emit(Events.DISPATCH_ITEM_STATUS, {
            "gapId": row.gap_id,
            "mode": row.mode,
            "status": row.status,
            "message": row.message,
        })

    def _mark(self, gap_id: int, status: str) -> None:
        row = self.rows.get(gap_id)
        if row is not None and not row.is_terminal:
            row.status = status
            self._row_changed(row)

    def _settle(self, gap_id: int, status: str, message: str = "") -> None:
        """Record a terminal outcome. The progress counter moves once per row."""
        row = self.rows.get(gap_id)
        if row is None:
            return
        first = not row.is_terminal
        row.status = status
        row.message = message
        self._row_changed(row)
        if first:
            completed = self.tracker.increment()
            self.store.set("dispatch.completedItems", completed)
            self.controller.update_loop_state({
                "stages": {"build": {"metrics": {"primary": f"{completed}/{self.tracker.total} dispatched"}}},
            })

    # --- Lanes ----------------------------------------------------------

    async def _create_issues(self, gaps: list[GapItem], lane: str) -> dict[int, int]:
        """Create one tracking issue per gap. Returns issue number → gap id."""
        prefix_chars = get_config().get("match_prefix_chars", 40)
        issue_to_gap: dict[int, int] = {}
        claimed: set[int] = set()
        position = 0

        async for event in self.api.stream(
            CREATE_ISSUES_EVENTS,
            json={"selectedIds": [g["id"] for g in gaps], "gaps": [_gap_payload(g) for g in gaps]},
            fallback="Failed to create issues",
        ):
            data = event.data
            if event.name == "issue":
                issue = data.get("issue") or data
                position += 1
                gap_id, strategy = match_issue_to_gap(
                    issue, gaps, position, claimed=claimed, prefix_chars=prefix_chars
                )
                if gap_id is not None:
                    claimed.add(gap_id)
                record = {
                    "number": issue.get("number", 0),
                    "url": issue.get("url", ""),
                    "title": issue.get("title", ""),
                    "gapId": gap_id,
                }

                # The service reports a failed creation as number 0 plus an error
                if issue.get("error") or not record["number"]:
                    error = issue.get("error") or "Issue creation failed"
                    self._log(f"Issue for gap {gap_id} not created: {error}")
                    if gap_id is not None:
                        self._settle(gap_id, "failed", error)
                    continue

                self.store.set("createdIssues", [*(self.store.get("createdIssues") or []), record])
                self._log(f"Issue #{record['number']}: {record['title']}")
                self._emit(Events.DISPATCH_ISSUE_CREATED, {"gapId": gap_id, "issue": record})

                if gap_id is None:
                    print(f"[M2C] Warning: issue #{record['number']} matches no {lane} gap", file=sys.stderr)
                    continue
                issue_to_gap[record["number"]] = gap_id
                self.rows[gap_id].issue = record
                if lane == "developer":
                    self._settle(gap_id, "assigned", "Issue created for developer")
                else:
                    self._mark(gap_id, "assigning")
            elif event.name == "log":
                self._log(data.get("message", ""))

        return issue_to_gap

    async def _cloud_lane(self, gaps: list[GapItem]) -> None:
        self._log(f"Creating {len(gaps)} issue(s) for the cloud coding agent...")
        issue_to_gap = await self._create_issues(gaps, "cloud")
        numbers = [number for number in issue_to_gap if number > 0]
        if not numbers:
            return

        self._log(f"Assigning {len(numbers)} issue(s) to the coding agent...")
        async for event in self.api.stream(
            ASSIGN_AGENT_EVENTS, json={"issueNumbers": numbers}, fallback="Failed to assign coding agent"
        ):
            data = event.data
            if event.name in ("result", "assignment"):
                self._settle_assignment(data.get("result") or data, issue_to_gap)
            elif event.name == "log":
                self._log(data.get("message", ""))
            elif event.name == "complete":
                # The final summary is authoritative over the per-item events
                for result in data.get("results") or []:
                    self._settle_assignment(result, issue_to_gap)

    def _settle_assignment(self, result: dict, issue_to_gap: dict[int, int]) -> None:
        number = result.get("issueNumber")
        gap_id = issue_to_gap.get(number)
        if gap_id is None:
            print(f"[M2C] Warning: assignment result for unknown issue #{number}", file=sys.stderr)
            return
        assigned = bool(result.get("assigned"))
        self._settle(gap_id, "assigned" if assigned else "failed", result.get("message", ""))
        self._log(f"#{number} → coding agent {'assigned' if assigned else 'assignment failed'}")

    async def _local_lane(self, gaps: list[GapItem]) -> None:
        self._log(f"Dispatching {len(gaps)} gap(s) to the local agent...")
        async for event in self.api.stream(
            LOCAL_AGENT_EVENTS,
            json={"gapIds": [g["id"] for g in gaps], "gaps": [_gap_payload(g) for g in gaps]},
            fallback="Failed to start local agent",
        ):
            data = event.data
            if event.name == "item-start":
                self._mark(data.get("id"), "working")
                self._log(f"Local agent working: {(data.get('requirement') or '')[:60]}...")
            elif event.name == "item-progress":
                self._log(f"[Gap {data.get('id')}] {data.get('message', '')}")
            elif event.name == "item-complete":
                success = bool(data.get("success"))
                summary = data.get("summary") or ""
                self._settle(data.get("id"), "implemented" if success else "failed", summary)
                self._log(f"Gap {data.get('id')}: {summary[:60] if success else 'Failed'}")
            elif event.name == "log":
                self._log(data.get("message", ""))

    async def _developer_lane(self, gaps: list[GapItem]) -> None:
        self._log(f"Creating {len(gaps)} issue(s) for developers...")
        await self._create_issues(gaps, "developer")
