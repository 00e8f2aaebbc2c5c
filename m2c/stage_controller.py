"""Stage controller — loop state, stage cards, the shared detail surface, and header navigation.

Stages move ``idle → waiting → active → complete | error``. Only the flows
drive transitions; this module merges their patches into the store in one
commit and re-renders the four stage cards from what was committed.
"""

import sys
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from m2c.config import get_config
from m2c.event_bus import EventBus, Events, StageAction, StageActions
from m2c.state import STAGES, Stage
from m2c.store import Store

# Meet and Analyze share one panel; renderers pick the section by stage.
STAGE_PANEL_MAP: dict[Stage, str] = {
    "meet": "panel-loading",
    "analyze": "panel-loading",
    "build": "panel-issues",
    "verify": "panel-qa",
}

STAGE_TITLES: dict[Stage, str] = {"meet": "Meet", "analyze": "Analyze", "build": "Build", "verify": "Verify"}

STATUS_LABELS = {
    "idle": "Idle",
    "waiting": "Waiting...",
    "active": "In Progress",
    "complete": "Complete ✓",
    "error": "Error",
}
STATUS_ICONS = {"idle": "◉", "waiting": "◉", "active": "⟳", "complete": "✓", "error": "✗"}

PHASES = ("meeting", "analyze", "build", "verify")

AGENTS = {
    "extractor": {"name": "WorkIQ", "role": "Requirements Agent", "letter": "W"},
    "analyzer": {"name": "Analyzer", "role": "Gap Analysis Agent", "letter": "A"},
    "builder": {"name": "Builder", "role": "Build Agent", "letter": "B"},
    "deployer": {"name": "Deployer", "role": "Deploy Agent", "letter": "D"},
    "validator": {"name": "Validator", "role": "QA Agent", "letter": "V"},
}


# ---------------------------------------------------------------------------
# Detail surface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoDetail:
    pass


@dataclass(frozen=True)
class ViewingDetail:
    stage: Stage

    @property
    def panel_id(self) -> str:
        return STAGE_PANEL_MAP[self.stage]

    @property
    def title(self) -> str:
        return STAGE_TITLES[self.stage]


DetailView = NoDetail | ViewingDetail


@dataclass
class StageCard:
    """Everything a renderer needs to draw one stage node."""

    stage: Stage
    title: str
    status: str
    status_text: str
    icon: str
    primary: str
    secondary: str
    is_active: bool
    is_selected: bool
    actions: list[StageAction] = field(default_factory=list)


CardRenderer = Callable[[list[StageCard]], None]


class StageController:
    def __init__(self, store: Store, bus: EventBus, actions: StageActions):
        self.store = store
        self.bus = bus
        self.actions = actions
        self.detail: DetailView = NoDetail()
        self.current_panel = "panel-analyze"
        self.status = ("Ready", "")
        self.active_agent: str | None = None
        self.active_phase = "meeting"
        self.completed_phases: set[str] = set()
        self.activity_feed: deque[tuple[str, str]] = deque(maxlen=get_config().get("activity_feed_limit", 50))
        self.cards: list[StageCard] = []
        self._renderers: list[CardRenderer] = []

    def add_renderer(self, renderer: CardRenderer) -> Callable[[], None]:
        """Register a view that redraws the stage cards."""
        self._renderers.append(renderer)
        return lambda: self._renderers.remove(renderer)

    # --- Loop state -----------------------------------------------------

    def update_loop_state(self, patch: dict) -> None:
        """Merge a partial patch into the store in one commit, then re-render.

        Recognized keys: ``meeting_name``, ``iteration``, ``active_stage``,
        ``detail_panel_open`` and ``stages`` (``{stage: {status, start_time,
        end_time, metrics}}``; metrics merge key by key). Unknown stages are
        ignored. Activating a stage moves any other active stage back to
        ``waiting`` so at most one stage is ever in flight. ``activeStage`` is
        cleared once the stage it names leaves ``active``.
        """
        state = self.store.get_state()
        commit = {}

        if "meeting_name" in patch or "iteration" in patch:
            meeting = dict(state["meeting"])
            if "meeting_name" in patch:
                meeting["name"] = patch["meeting_name"]
            if "iteration" in patch:
                meeting["iteration"] = patch["iteration"]
            commit["meeting"] = meeting

        if "active_stage" in patch:
            commit["activeStage"] = patch["active_stage"]
        if "detail_panel_open" in patch:
            commit["detailPanelOpen"] = patch["detail_panel_open"]

        stage_patch = patch.get("stages") or {}
        if stage_patch:
            stages = dict(state["stages"])
            activated = None
            for name, data in stage_patch.items():
                if name not in stages:
                    continue
                updated = dict(stages[name])
                if "status" in data:
                    updated["status"] = data["status"]
                    if data["status"] == "active":
                        activated = name
                if "start_time" in data:
                    updated["startTime"] = data["start_time"]
                if "end_time" in data:
                    updated["endTime"] = data["end_time"]
                if data.get("metrics"):
                    updated["metrics"] = {**updated["metrics"], **data["metrics"]}
                stages[name] = updated

            if activated is not None:
                for name in STAGES:
                    if name != activated and stages[name]["status"] == "active":
                        print(
                            f"[M2C] Warning: '{name}' was still active when '{activated}' started; "
                            f"moving it back to waiting.",
                            file=sys.stderr,
                        )
                        stages[name] = {**stages[name], "status": "waiting"}
                commit.setdefault("activeStage", activated)
            commit["stages"] = stages

        # activeStage only ever names a stage that is still in flight
        stages = commit.get("stages", state["stages"])
        active_stage = commit.get("activeStage", state["activeStage"])
        if active_stage is not None and stages.get(active_stage, {}).get("status") != "active":
            commit["activeStage"] = None

        if commit:
            self.store.set(commit)
        self.render_loop_nodes()

    def advance_stage(self, from_: Stage | None, to: Stage | None) -> None:
        """Mark ``from_`` complete and ``to`` active, then signal the transition."""
        now = time.time()
        patch: dict = {"active_stage": to, "stages": {}}
        if from_:
            patch["stages"][from_] = {"status": "complete", "end_time": now}
        if to:
            patch["stages"][to] = {"status": "active", "start_time": now}
        self.update_loop_state(patch)
        self.bus.emit(Events.STAGE_TRANSITION, {"from": from_, "to": to})

    def render_loop_nodes(self) -> list[StageCard]:
        """Rebuild the four stage cards from committed store state."""
        stages = self.store.get("stages")
        active_stage = self.store.get("activeStage")
        open_stage = self.detail.stage if isinstance(self.detail, ViewingDetail) else None

        cards = []
        for stage in STAGES:
            record = stages[stage]
            metrics = record.get("metrics") or {}
            status = record["status"]
            cards.append(StageCard(
                stage=stage,
                title=STAGE_TITLES[stage],
                status=status,
                status_text=metrics.get("statusText") or STATUS_LABELS.get(status, "Idle"),
                icon=STATUS_ICONS.get(status, "◉"),
                primary=metrics.get("primary") or "—",
                secondary=metrics.get("secondary") or "—",
                is_active=active_stage == stage,
                is_selected=open_stage == stage,
                actions=self.actions.available(stage, record) if status == "waiting" else [],
            ))

        self.cards = cards
        for renderer in list(self._renderers):
            try:
                renderer(cards)
            except Exception as exc:
                print(f"[M2C] Stage renderer failed: {exc!r}", file=sys.stderr)
        self.bus.emit(Events.STAGE_CHANGED, {"cards": cards, "activeStage": active_stage})
        return cards

    # --- Panels and the detail surface ----------------------------------

    def show_panel(self, panel_id: str) -> None:
        self.current_panel = panel_id
        self.bus.emit(Events.PANEL_CHANGED, {"panelId": panel_id})

    def open_stage_detail(self, stage: Stage) -> bool:
        """Present ``stage`` on the shared detail surface.

        Idle stages have nothing to show and are rejected with an advisory.
        Any detail already open is closed first, with its close event.
        """
        record = (self.store.get("stages") or {}).get(stage)
        if not record or record["status"] == "idle":
            self.advise("This stage hasn't started yet", "info")
            return False

        if isinstance(self.detail, ViewingDetail):
            self._close_detail(emit=True)

        self.detail = ViewingDetail(stage)
        self.store.set("detailPanelOpen", stage)
        self.render_loop_nodes()
        self.bus.emit(Events.STAGE_DETAIL_OPENED, {"stage": stage, "panelId": STAGE_PANEL_MAP[stage]})
        return True

    def close_stage_detail(self) -> None:
        """Close the detail surface. Closing when nothing is open does nothing."""
        if isinstance(self.detail, NoDetail):
            return
        self._close_detail(emit=True)

    def cancel(self) -> None:
        """Global cancel gesture (Escape)."""
        if self.store.get("detailPanelOpen") or isinstance(self.detail, ViewingDetail):
            self.close_stage_detail()

    def _close_detail(self, emit: bool) -> None:
        closed = self.detail
        self.detail = NoDetail()
        self.store.set("detailPanelOpen", None)
        if emit:
            self.render_loop_nodes()
            self.bus.emit(Events.STAGE_DETAIL_CLOSED, {"stage": getattr(closed, "stage", None)})

    # --- Status bar, agent badge, activity feed --------------------------

    def set_status(self, text: str, kind: str = "") -> None:
        self.status = (text, kind)
        self.bus.emit(Events.STATUS_CHANGED, {"text": text, "kind": kind})

    def set_active_agent(self, agent_key: str) -> None:
        if agent_key in AGENTS:
            self.active_agent = agent_key

    def append_log(self, channel: str, message: str) -> None:
        """Record a log line for ``channel`` and mirror it to the activity feed."""
        self.activity_feed.append((time.strftime("%H:%M:%S"), message))
        self.bus.emit(Events.LOG_MESSAGE, {"channel": channel, "message": message})

    def advise(self, message: str, level: str = "error") -> None:
        """User-visible advisory (toast)."""
        self.bus.emit(Events.TOAST, {"message": message, "level": level})

    # --- Header phase navigation ----------------------------------------

    def set_active_phase(self, phase: str) -> None:
        if phase in PHASES:
            self.active_phase = phase

    def mark_phase_completed(self, phase: str) -> None:
        self.completed_phases.add(phase)

    def set_qa_step(self, step: str) -> None:
        """Map Verify sub-steps (deploy, validate, complete) onto the header phases."""
        if step in ("deploy", "validate"):
            self.set_active_phase("verify")
        elif step == "complete":
            self.mark_phase_completed("verify")

    def reset(self) -> None:
        self.detail = NoDetail()
        self.current_panel = "panel-analyze"
        self.status = ("Ready", "")
        self.active_agent = None
        self.active_phase = "meeting"
        self.completed_phases = set()
        self.activity_feed.clear()
