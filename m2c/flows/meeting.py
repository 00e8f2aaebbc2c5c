"""Meet flow — pull a meeting's requirements out of the service.

Streams ``GET /api/analyze?meeting=<name>``. Requirements arrive once and are
immutable for the rest of the iteration: their index + 1 is the gap id every
later stage joins on.
"""

import time

from m2c.errors import ConsoleError, UserInputError
from m2c.event_bus import Events
from m2c.stage_controller import StageController
from m2c.store import Store
from m2c.utils.api import PipelineApi
from m2c.utils.sse import ANALYZE_EVENTS
from m2c.utils.validator import validate_meeting_name

LOG_CHANNEL = "agentLogEntries"

_PROGRESS_TEXT = ["Connecting...", "Fetching data...", "Extracting requirements...", "Creating epic..."]


class MeetingFlow:
    def __init__(self, store: Store, controller: StageController, api: PipelineApi):
        self.store = store
        self.controller = controller
        self.api = api

    @property
    def analysis_phase(self) -> str:
        return self.store.get("analysisPhase") or "idle"

    def set_analysis_phase(self, phase: str) -> None:
        self.store.set("analysisPhase", phase)

    async def start_analysis(self, meeting_name: str) -> bool:
        """Run the Meet stage. Returns True when requirements were extracted."""
        try:
            name = validate_meeting_name(meeting_name)
        except UserInputError as exc:
            self.controller.advise(str(exc), "info")
            return False

        controller = self.controller
        self.set_analysis_phase("extracting")
        controller.set_status("Analyzing...", "processing")
        controller.update_loop_state({
            "meeting_name": name,
            "active_stage": "meet",
            "stages": {"meet": {
                "status": "active",
                "start_time": time.time(),
                "metrics": {"primary": "Extracting...", "secondary": "", "statusText": "WorkIQ Running"},
            }},
        })
        controller.show_panel("panel-loop")
        self.store.set({"epicIssue": {"number": 0, "url": ""}, "requirements": [], "createdIssues": []})
        controller.bus.emit(Events.MEETING_STARTED, {"meetingName": name})

        try:
            result = await self._stream_meeting(name)
            if not result.get("success", False):
                raise ConsoleError("Extraction failed")
        except Exception as exc:
            controller.advise(str(exc) or "Analysis failed")
            controller.set_status("Error", "error")
            controller.update_loop_state({
                "stages": {"meet": {"status": "error", "metrics": {"statusText": "Failed"}}},
            })
            controller.show_panel("panel-analyze")
            self.set_analysis_phase("idle")
            return False

        requirements = self.store.get("requirements") or []
        self.set_analysis_phase("selecting")
        controller.set_status(f"{len(requirements)} Requirements")
        controller.set_active_phase("analyze")
        controller.update_loop_state({
            "stages": {"analyze": {
                "status": "waiting",
                "metrics": {"primary": "Select & Analyze", "statusText": "Waiting..."},
            }},
        })
        controller.bus.emit(Events.MEETING_COMPLETE, {"meetingName": name, "requirements": requirements})
        return True

    async def _stream_meeting(self, name: str) -> dict:
        controller = self.controller
        result: dict = {}

        async for event in self.api.stream(
            ANALYZE_EVENTS, method="GET", params={"meeting": name}, fallback="Analysis failed"
        ):
            data = event.data
            if event.name == "progress":
                step = data.get("step", 0)
                text = _PROGRESS_TEXT[step] if 0 <= step < len(_PROGRESS_TEXT) else "Processing..."
                controller.update_loop_state({"stages": {"meet": {"metrics": {"statusText": text}}}})
                if step == 0:
                    controller.set_active_agent("extractor")
            elif event.name == "meeting-info":
                self.store.set("meeting.info", data)
                controller.bus.emit(Events.MEETING_INFO_RECEIVED, data)
                controller.update_loop_state({
                    "stages": {"meet": {"metrics": {"secondary": data.get("date") or ""}}},
                })
            elif event.name == "requirements":
                requirements = [str(r) for r in data.get("requirements") or []]
                self.store.set("requirements", requirements)
                controller.bus.emit(Events.REQUIREMENTS_RECEIVED, {"requirements": requirements})
                controller.update_loop_state({
                    "stages": {"meet": {"metrics": {"primary": f"{len(requirements)} requirements"}}},
                })
            elif event.name == "epic-created":
                self.store.set("epicIssue", {"number": data.get("number", 0), "url": data.get("url", "")})
                controller.bus.emit(Events.EPIC_CREATED, self.store.get("epicIssue"))
            elif event.name == "log":
                controller.append_log(LOG_CHANNEL, data.get("message", ""))
            elif event.name == "complete":
                result = data
                count = len(self.store.get("requirements") or [])
                controller.update_loop_state({
                    "stages": {"meet": {
                        "status": "complete",
                        "end_time": time.time(),
                        "metrics": {"statusText": "Complete ✓", "primary": f"{count} requirements"},
                    }},
                })

        return result
