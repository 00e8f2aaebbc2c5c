"""Named-event pub/sub, plus the typed stage-action channel.

The bus decouples render triggers (logs, advisories, panel changes) from the
flows that produce them. ``StageActions`` lets each flow publish what a stage
card can offer once that stage is ``waiting`` without the stage controller
importing the flows.
"""

import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from m2c.state import STAGES, Stage, StageRecord


class Events:
    """Well-known event names."""

    # Meeting
    MEETING_STARTED = "meeting:started"
    MEETING_INFO_RECEIVED = "meeting:info-received"
    REQUIREMENTS_RECEIVED = "requirements:received"
    EPIC_CREATED = "epic:created"
    MEETING_COMPLETE = "meeting:complete"

    # Analysis
    ANALYSIS_STARTED = "analysis:started"
    GAP_STARTED = "gap:started"
    GAP_RESULT = "gap:result"
    ANALYSIS_COMPLETE = "analysis:complete"

    # Build / dispatch
    DISPATCH_STARTED = "dispatch:started"
    DISPATCH_ISSUE_CREATED = "dispatch:issue-created"
    DISPATCH_ITEM_STATUS = "dispatch:item-status"
    DISPATCH_COMPLETE = "dispatch:complete"

    # Verify
    DEPLOY_STARTED = "deploy:started"
    DEPLOY_COMPLETE = "deploy:complete"
    VALIDATION_STARTED = "validation:started"
    VALIDATION_ITEM_START = "validation:item-start"
    VALIDATION_RESULT = "validation:result"
    VALIDATION_COMPLETE = "validation:complete"

    # Stage / UI
    STAGE_CHANGED = "stage:changed"
    STAGE_TRANSITION = "stage:transition"
    STAGE_DETAIL_OPENED = "stage:detail-opened"
    STAGE_DETAIL_CLOSED = "stage:detail-closed"
    PANEL_CHANGED = "panel:changed"
    STATUS_CHANGED = "status:changed"
    LOG_MESSAGE = "log:message"
    TOAST = "toast:show"

    # App
    APP_RESET = "app:reset"


Handler = Callable[[Any], None]


class EventBus:
    def __init__(self):
        self._listeners: dict[str, list[Handler]] = {}

    def on(self, event: str, callback: Handler) -> Callable[[], None]:
        """Subscribe to ``event``. Returns an unsubscribe function."""
        self._listeners.setdefault(event, []).append(callback)
        return lambda: self.off(event, callback)

    def off(self, event: str, callback: Handler) -> None:
        listeners = self._listeners.get(event)
        if listeners and callback in listeners:
            listeners.remove(callback)
            if not listeners:
                del self._listeners[event]

    def emit(self, event: str, data: Any = None) -> None:
        """Call every handler for ``event``. A failing handler is logged and skipped."""
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(data)
            except Exception as exc:
                print(f"[EventBus] Error in '{event}' handler: {exc!r}", file=sys.stderr)

    def once(self, event: str, callback: Handler) -> Callable[[], None]:
        def wrapper(data: Any) -> None:
            self.off(event, wrapper)
            callback(data)

        return self.on(event, wrapper)

    def clear(self) -> None:
        self._listeners.clear()


# ---------------------------------------------------------------------------
# Stage actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageAction:
    """A one-click affordance offered on a stage card."""

    key: str
    label: str
    run: Callable[[], Any]


ActionProvider = Callable[[StageRecord], list[StageAction]]


class StageActions:
    """Per-stage registry of pure "what can this card offer?" functions."""

    def __init__(self):
        self._providers: dict[Stage, list[ActionProvider]] = {stage: [] for stage in STAGES}

    def register(self, stage: Stage, provider: ActionProvider) -> Callable[[], None]:
        if stage not in self._providers:
            raise ValueError(f"Unknown stage '{stage}'. Must be one of: {STAGES}")
        self._providers[stage].append(provider)
        return lambda: self._providers[stage].remove(provider)

    def available(self, stage: Stage, record: StageRecord) -> list[StageAction]:
        actions: list[StageAction] = []
        for provider in self._providers.get(stage, []):
            try:
                actions.extend(provider(record))
            except Exception as exc:
                print(f"[EventBus] Error computing actions for '{stage}': {exc!r}", file=sys.stderr)
        return actions
