"""Analyze flow — gap analysis of the selected requirements.

Gap items live here, outside the store: they are appended to by every
analysis stream and by the verify failure loop, and flipped on every
checkbox, which is too write-heavy for the store's copy-on-write paths.
``GapBoard.reset`` is their reset hook.
"""

import time

from m2c.errors import ConsoleError
from m2c.event_bus import Events
from m2c.stage_controller import StageController
from m2c.state import GapItem
from m2c.store import Store
from m2c.utils.api import PipelineApi
from m2c.utils.sse import ANALYZE_GAPS_EVENTS

LOG_CHANNEL = "agentLogEntries"

# Phrases in a gap summary that mean "nothing to do"
NO_GAP_PATTERNS = (
    "no gap", "none", "no changes needed", "already implemented",
    "fully implemented", "no action", "requirement met", "requirement is met",
    "no modification", "no work needed", "n/a", "not applicable",
    "already exists", "already in place", "no additional", "fully met",
    "compliant", "complete as-is", "nothing to", "no missing",
)


def is_no_gap(gap: dict) -> bool:
    """True when the analyzer's gap text says the requirement is already met."""
    text = (gap.get("gap") or "").lower()
    return any(pattern in text for pattern in NO_GAP_PATTERNS)


def normalize_gap(raw: dict) -> GapItem:
    """Shape a streamed ``gap`` payload into a board item."""
    gap: GapItem = {
        "id": int(raw["id"]),
        "requirement": raw.get("requirement", ""),
        "gap": raw.get("gap", ""),
        "currentState": raw.get("currentState", ""),
        "complexity": raw.get("complexity", "Medium"),
        "estimatedEffort": raw.get("estimatedEffort", ""),
        "details": raw.get("details", ""),
        "selected": False,
        "source": "analyze",
        "requirementIndex": int(raw["id"]) - 1,
    }
    gap["hasGap"] = not is_no_gap(gap)
    return gap


class GapBoard:
    """The live gap collection and its selection state."""

    def __init__(self):
        self._gaps: list[GapItem] = []

    def all(self) -> list[GapItem]:
        return self._gaps

    def replace(self, gaps: list[GapItem]) -> None:
        self._gaps = list(gaps)

    def get(self, gap_id: int) -> GapItem | None:
        return next((g for g in self._gaps if g["id"] == gap_id), None)

    def upsert(self, gap: GapItem) -> None:
        """Add ``gap``, replacing an earlier result for the same id."""
        for index, existing in enumerate(self._gaps):
            if existing["id"] == gap["id"]:
                self._gaps[index] = gap
                return
        self._gaps.append(gap)

    def actionable(self) -> list[GapItem]:
        return [g for g in self._gaps if g.get("hasGap")]

    def selected(self) -> list[GapItem]:
        return [g for g in self._gaps if g.get("selected") and g.get("hasGap")]

    def set_selected(self, gap_id: int, selected: bool) -> None:
        gap = self.get(gap_id)
        if gap is not None and gap.get("hasGap"):
            gap["selected"] = selected

    def select_all(self, selected: bool = True) -> None:
        for gap in self.actionable():
            gap["selected"] = selected

    def toggle_all(self) -> bool:
        """Invert: select everything unless something is already selected."""
        new_state = not any(g.get("selected") for g in self.actionable())
        self.select_all(new_state)
        return new_state

    def selected_count(self) -> int:
        return len(self.selected())

    def counts(self) -> tuple[int, int]:
        """(gaps, met) over every analyzed requirement."""
        gaps = len(self.actionable())
        return gaps, len(self._gaps) - gaps

    def reset(self) -> None:
        self._gaps = []


class AnalyzeFlow:
    def __init__(self, store: Store, controller: StageController, api: PipelineApi, board: GapBoard):
        self.store = store
        self.controller = controller
        self.api = api
        self.board = board
        self.skipped: set[int] = set()
        self.analyzing: set[int] = set()

    def reset(self) -> None:
        self.skipped = set()
        self.analyzing = set()

    async def start_gap_analysis(self, selected_indices: list[int]) -> bool:
        """Analyze the requirements at ``selected_indices``. Returns True on success."""
        if not selected_indices:
            self.controller.advise("Please select at least one requirement to analyze.", "info")
            return False

        controller = self.controller
        requirements = self.store.get("requirements") or []
        selected = sorted(set(selected_indices))
        self.skipped = set(range(len(requirements))) - set(selected)

        self.store.set("analysisPhase", "analyzing")
        controller.set_status("Analyzer Running...", "processing")
        controller.set_active_agent("analyzer")
        controller.update_loop_state({
            "active_stage": "analyze",
            "stages": {"analyze": {
                "status": "active",
                "start_time": time.time(),
                "metrics": {"primary": f"0/{len(selected)} analyzed", "secondary": "", "statusText": "Analyzer Running"},
            }},
        })
        controller.bus.emit(Events.ANALYSIS_STARTED, {"selectedIndices": selected})

        try:
            await self._stream_gaps(selected, total=len(selected))
        except Exception as exc:
            controller.advise(str(exc) or "Gap analysis failed")
            controller.set_status("Error", "error")
            controller.update_loop_state({
                "stages": {"analyze": {"status": "error", "metrics": {"statusText": "Failed"}}},
            })
            self.store.set("analysisPhase", "selecting")
            return False

        self.store.set("analysisPhase", "reviewed")
        gaps, met = self.board.counts()
        controller.set_active_phase("analyze")
        controller.set_status(f"{gaps} Gaps / {met} Met")
        controller.update_loop_state({
            "stages": {
                "analyze": {
                    "status": "complete",
                    "end_time": time.time(),
                    "metrics": {"primary": f"{gaps} gaps / {met} met", "statusText": "Complete ✓"},
                },
                "build": {"status": "waiting", "metrics": {"primary": "Select & Dispatch", "statusText": "Waiting..."}},
            },
        })
        controller.bus.emit(Events.ANALYSIS_COMPLETE, {"gaps": gaps, "met": met})
        return True

    async def analyze_skipped(self) -> bool:
        """Analyze requirements that were left out of the first pass."""
        indices = sorted(self.skipped)
        if not indices:
            self.controller.advise("No skipped requirements to analyze.", "info")
            return False

        controller = self.controller
        controller.set_status("Analyzer processing skipped...", "processing")
        controller.set_active_agent("analyzer")
        try:
            await self._stream_gaps(indices, total=None)
        except Exception as exc:
            controller.advise(str(exc) or "Gap analysis failed")
            controller.set_status("Error analyzing skipped", "error")
            return False

        gaps, met = self.board.counts()
        controller.set_status(f"{gaps} Gaps / {met} Met")
        return True

    async def _stream_gaps(self, indices: list[int], total: int | None) -> None:
        analyzed = 0
        async for event in self.api.stream(
            ANALYZE_GAPS_EVENTS, json={"selectedIndices": indices}, fallback="Gap analysis failed"
        ):
            data = event.data
            if event.name == "gap-started":
                self.analyzing.add(data.get("id"))
                self.controller.bus.emit(Events.GAP_STARTED, {"id": data.get("id")})
            elif event.name == "gap":
                raw = data.get("gap")
                if not isinstance(raw, dict) or "id" not in raw:
                    continue
                gap = normalize_gap(raw)
                self.board.upsert(gap)
                self.analyzing.discard(gap["id"])
                self.skipped.discard(gap["requirementIndex"])
                self.controller.bus.emit(Events.GAP_RESULT, gap)
                analyzed += 1
                if total is not None:
                    self.controller.update_loop_state({
                        "stages": {"analyze": {"metrics": {"primary": f"{analyzed}/{total} analyzed"}}},
                    })
            elif event.name == "log":
                self.controller.append_log(LOG_CHANNEL, data.get("message", ""))
            elif event.name == "complete" and data.get("success") is False:
                raise ConsoleError(data.get("error") or "Gap analysis failed")
