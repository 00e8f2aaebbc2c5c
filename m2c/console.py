"""Console — composition root wiring the store, bus, stage controller, and flows.

Both outer surfaces (``m2c.main`` and the Streamlit dashboard) drive the
pipeline through one ``Console`` instance.
"""

from m2c.event_bus import EventBus, Events, StageAction, StageActions
from m2c.flows.analyze import AnalyzeFlow, GapBoard
from m2c.flows.build import BuildFlow
from m2c.flows.meeting import MeetingFlow
from m2c.flows.verify import VerifyFlow
from m2c.stage_controller import PHASES, StageController
from m2c.state import StageRecord
from m2c.store import create_store
from m2c.utils.api import PipelineApi


class Console:
    def __init__(self, api: PipelineApi | None = None, bus: EventBus | None = None):
        self.api = api or PipelineApi()
        self.bus = bus or EventBus()
        self.store = create_store()
        self.actions = StageActions()
        self.controller = StageController(self.store, self.bus, self.actions)

        self.board = GapBoard()
        self.meeting = MeetingFlow(self.store, self.controller, self.api)
        self.analyze = AnalyzeFlow(self.store, self.controller, self.api, self.board)
        self.build = BuildFlow(self.store, self.controller, self.api, self.board)
        self.verify = VerifyFlow(self.store, self.controller, self.api, self.board, self.build)

        self.actions.register("analyze", self._analyze_actions)
        self.actions.register("build", self._build_actions)
        self.actions.register("verify", self._verify_actions)

    # --- Stage card affordances -----------------------------------------

    def _analyze_actions(self, record: StageRecord) -> list[StageAction]:
        count = len(self.store.get("requirements") or [])
        if not count:
            return []
        return [StageAction(
            key="analyze-all",
            label=f"Analyze {count} requirements",
            run=lambda: self.analyze.start_gap_analysis(list(range(count))),
        )]

    def _build_actions(self, record: StageRecord) -> list[StageAction]:
        actions = []
        if self.board.selected_count():
            actions.append(StageAction(
                key="dispatch-selected",
                label=f"Dispatch {self.board.selected_count()} selected",
                run=self.build.dispatch_selected,
            ))
        remaining = self.build.dispatch_counts()["remaining"]
        if remaining:
            actions.append(StageAction(
                key="dispatch-remaining",
                label=f"Dispatch remaining ({remaining})",
                run=self.build.dispatch_remaining,
            ))
        return actions

    def _verify_actions(self, record: StageRecord) -> list[StageAction]:
        return [StageAction(key="launch-qa", label="Ship & Validate", run=self.verify.launch_qa_workflow)]

    # --- Navigation -----------------------------------------------------

    def navigate_to_phase(self, phase: str) -> str:
        """Switch the header phase and return the panel now shown."""
        if phase not in PHASES:
            raise ValueError(f"Unknown phase '{phase}'. Must be one of: {PHASES}")

        controller = self.controller
        controller.set_active_phase(phase)
        started = self.meeting.analysis_phase != "idle"
        if phase == "meeting":
            controller.show_panel("panel-loading" if started else "panel-analyze")
        elif phase == "analyze" and started:
            controller.show_panel("panel-loading")
        elif phase == "build":
            controller.show_panel("panel-issues")
        elif phase == "verify":
            controller.show_panel("panel-qa")
        return controller.current_panel

    def return_to_loop(self) -> None:
        self.controller.close_stage_detail()
        self.controller.show_panel("panel-loop")

    def reset(self) -> None:
        """New Meeting: drop every piece of pipeline state."""
        self.board.reset()
        self.analyze.reset()
        self.build.reset()
        self.verify.reset()
        self.controller.reset()
        self.store.reset()
        self.controller.set_status("Ready")
        self.controller.show_panel("panel-analyze")
        self.controller.render_loop_nodes()
        self.bus.emit(Events.APP_RESET)
