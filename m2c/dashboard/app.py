"""Meeting-to-Code — Streamlit control panel over one Console per browser session."""

import sys
from pathlib import Path

# Add project root to path so 'm2c' package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

import asyncio

import streamlit as st

from m2c.console import Console
from m2c.event_bus import Events
from m2c.flows.build import MODE_LABELS, ROW_STATUS_LABELS
from m2c.stage_controller import StageCard
from m2c.state import EXECUTOR_MODES

st.set_page_config(page_title="Meeting-to-Code Console", layout="wide")
st.title("Meeting-to-Code Console")
st.markdown(
    "Turns a meeting into shipped code: **Meet** extracts requirements, **Analyze** "
    "finds the gaps, **Build** dispatches them to a cloud agent, the local agent or a "
    "developer, and **Verify** deploys and validates the result."
)


def _get_console() -> Console:
    """One console per session; advisories are queued until the next render."""
    if "m2c_console" not in st.session_state:
        console = Console()
        st.session_state["m2c_toasts"] = []
        console.bus.on(Events.TOAST, lambda data: st.session_state["m2c_toasts"].append(data))
        st.session_state["m2c_console"] = console
    return st.session_state["m2c_console"]


console = _get_console()


def _run(coro) -> None:
    """Run one flow coroutine to completion, then redraw."""
    asyncio.run(coro)
    st.rerun()


def _flush_toasts() -> None:
    for toast in st.session_state.get("m2c_toasts", []):
        level = toast.get("level", "error")
        if level == "error":
            st.error(toast["message"])
        elif level == "warning":
            st.warning(toast["message"])
        else:
            st.info(toast["message"])
    st.session_state["m2c_toasts"] = []


# ---------------------------------------------------------------------------
# Loop diagram
# ---------------------------------------------------------------------------


def _render_cards(cards: list[StageCard]) -> None:
    columns = st.columns(len(cards))
    for column, card in zip(columns, cards):
        with column:
            marker = " ◀" if card.is_active else ""
            st.markdown(f"### {card.icon} {card.title}{marker}")
            st.caption(card.status_text)
            st.markdown(f"**{card.primary}**  \n{card.secondary}")
            for action in card.actions:
                if st.button(action.label, key=f"action_{card.stage}_{action.key}"):
                    _run(action.run())
            if card.status != "idle" and st.button("Details", key=f"detail_{card.stage}"):
                console.controller.open_stage_detail(card.stage)
                st.rerun()


# ---------------------------------------------------------------------------
# Stage panels
# ---------------------------------------------------------------------------


def _render_meet_panel() -> None:
    info = console.store.get("meeting.info") or {}
    if info:
        st.markdown(f"**{info.get('title', '')}** — {info.get('date', '')}")
        if info.get("summary"):
            st.caption(info["summary"])
    epic = console.store.get("epicIssue") or {}
    if epic.get("url"):
        st.markdown(f"Epic: [#{epic['number']}]({epic['url']})")

    requirements = console.store.get("requirements") or []
    if console.meeting.analysis_phase == "selecting" and requirements:
        with st.form("requirements_form"):
            picked = [
                index for index, requirement in enumerate(requirements)
                if st.checkbox(requirement, value=True, key=f"req_{index}")
            ]
            if st.form_submit_button("Analyze selected", type="primary"):
                _run(console.analyze.start_gap_analysis(picked))
    else:
        for index, requirement in enumerate(requirements, 1):
            st.markdown(f"{index}. {requirement}")

    if console.analyze.skipped and st.button("Analyze skipped requirements"):
        _run(console.analyze.analyze_skipped())


def _render_build_panel() -> None:
    board = console.board
    build = console.build
    counts = build.dispatch_counts()
    st.progress(counts["percent"] / 100, text=f"{counts['dispatched']} dispatched · {counts['remaining']} remaining")

    default_mode = EXECUTOR_MODES.index("local")
    modes: dict[int, str] = {}
    for gap in board.actionable():
        row = build.rows.get(gap["id"])
        cols = st.columns([1, 6, 2, 2])
        with cols[0]:
            checked = st.checkbox(
                "Select", value=bool(gap.get("selected")), key=f"gap_sel_{gap['id']}",
                label_visibility="collapsed", disabled=gap["id"] in build.tracker,
            )
            board.set_selected(gap["id"], checked)
        with cols[1]:
            tag = " *(verify)*" if gap.get("source") == "verify" else ""
            st.markdown(f"**{gap['requirement']}**{tag}  \n{gap.get('gap', '')}")
        with cols[2]:
            if row is None:
                modes[gap["id"]] = st.selectbox(
                    "Executor", EXECUTOR_MODES, index=default_mode, key=f"gap_mode_{gap['id']}",
                    format_func=MODE_LABELS.get, label_visibility="collapsed",
                )
            else:
                st.write(MODE_LABELS[row.mode])
        with cols[3]:
            if row is None:
                st.write("Queued")
            else:
                issue = f" [#{row.issue['number']}]({row.issue['url']})" if row.issue else ""
                st.markdown(f"{ROW_STATUS_LABELS[row.status]}{issue}")

    left, middle, right = st.columns(3)
    if left.button(f"Dispatch {board.selected_count()} selected", type="primary", disabled=build.in_progress):
        _run(build.dispatch_selected(modes))
    if counts["remaining"] and middle.button(f"Dispatch remaining ({counts['remaining']})"):
        _run(build.dispatch_remaining())
    if counts["dispatched"] and right.button("Finish"):
        summary = build.finish_dispatch()
        st.success(f"{summary.dispatched} dispatched, {summary.assigned} assigned, {summary.issue_count} issues")


def _render_verify_panel() -> None:
    verify = console.verify
    st.caption(verify.qa_summary())
    if verify.deployed_url:
        st.markdown(f"Deployed: [{verify.deployed_url}]({verify.deployed_url})")

    lines = [
        "| # | Requirement | Gap | Issue | Validation |",
        "|---|-------------|-----|-------|------------|",
    ]
    for row in verify.qa_rows():
        gap = "Gap" if row["hasGap"] else "Met"
        issue = f"#{row['issue']['number']}" if row["issue"] else "—"
        requirement = row["requirement"].replace("|", "\\|")
        lines.append(f"| {row['index'] + 1} | {requirement} | {gap} | {issue} | {row['validation']} |")
    st.markdown("\n".join(lines))

    key, label = verify.qa_button_state()
    left, middle, right = st.columns(3)
    if left.button(label, type="primary", disabled=verify.running):
        if key == "fix":
            verify.redispatch_from_verify()
            st.rerun()
        else:
            _run(verify.launch_qa_workflow())
    if middle.button("Deploy only", disabled=verify.running):
        _run(verify.run_deploy_only())
    if right.button("Validate only", disabled=verify.running or not verify.deployed_url):
        _run(verify.run_validate_only())


PANELS = {"meet": _render_meet_panel, "analyze": _render_meet_panel, "build": _render_build_panel, "verify": _render_verify_panel}


# ---------------------------------------------------------------------------
# Page logic
# ---------------------------------------------------------------------------

st.divider()
_flush_toasts()

text, kind = console.controller.status
st.caption(f"Status: {text}" + (f" ({kind})" if kind else ""))

if console.meeting.analysis_phase == "idle":
    meeting_name = st.text_input("Meeting name:", placeholder="e.g. Sprint 42 planning")
    if st.button("Start", type="primary"):
        if not meeting_name or not meeting_name.strip():
            st.error("Please enter a meeting name.")
            st.stop()
        _run(console.meeting.start_analysis(meeting_name))
else:
    _render_cards(console.controller.render_loop_nodes())

    detail = console.controller.detail
    stage = getattr(detail, "stage", None)
    if stage is not None:
        with st.container(border=True):
            header, close = st.columns([8, 1])
            header.subheader(detail.title)
            if close.button("Close", key="close_detail"):
                console.controller.close_stage_detail()
                st.rerun()
            PANELS[stage]()

    with st.expander("Activity"):
        for stamp, message in reversed(console.controller.activity_feed):
            st.caption(f"{stamp} — {message}")

    if st.button("New Meeting"):
        console.reset()
        st.rerun()
