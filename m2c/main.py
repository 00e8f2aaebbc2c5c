"""Entry point: runs one meeting through Meet → Analyze → Build → Verify from the terminal."""

import asyncio
import sys

from m2c.config import get_config
from m2c.console import Console
from m2c.errors import UserInputError
from m2c.event_bus import Events
from m2c.utils.validator import validate_executor, validate_meeting_name


def _attach_printers(console: Console) -> None:
    """Echo log lines and advisories to the terminal."""
    console.bus.on(Events.LOG_MESSAGE, lambda data: print(f"[M2C] {data['message']}"))

    def on_toast(data: dict) -> None:
        level = data.get("level", "error")
        stream = sys.stdout if level == "info" else sys.stderr
        print(f"[M2C] {level.upper()}: {data['message']}", file=stream)

    console.bus.on(Events.TOAST, on_toast)


async def run_pipeline(console: Console, meeting_name: str, executor: str, verify: bool = True) -> bool:
    """Run every stage in order. Returns True when the pipeline reached its last stage."""
    if not await console.meeting.start_analysis(meeting_name):
        return False

    requirements = console.store.get("requirements") or []
    print(f"[M2C] {len(requirements)} requirements extracted")
    if not await console.analyze.start_gap_analysis(list(range(len(requirements)))):
        return False

    gaps, met = console.board.counts()
    print(f"[M2C] Analysis — {gaps} gaps, {met} met")
    if not gaps:
        print("[M2C] Nothing to build.")
        return True

    console.board.select_all()
    modes = {gap["id"]: executor for gap in console.board.selected()}
    report = await console.build.dispatch_selected(modes)
    if report is None or report.fatal:
        return False
    print(f"[M2C] Dispatched {len(report.dispatched)}, failed {len(report.failed)}")

    if not verify:
        return True

    if not await console.verify.launch_qa_workflow():
        return False
    print(f"[M2C] {console.verify.qa_summary()}")
    failed = console.verify.get_failed_validation_gaps()
    for gap in failed:
        print(f"[M2C]   ✗ {gap['requirement']}")
    return True


def run(meeting_name: str, executor: str | None = None, verify: bool = True) -> bool:
    """Validate the arguments and run the pipeline against the configured service.

    Args:
        meeting_name: Name of the meeting to extract requirements from.
        executor: Lane for every gap. None uses config default.
        verify: Deploy and validate after dispatch.
    """
    config = get_config()
    name = validate_meeting_name(meeting_name)
    mode = validate_executor(executor, config.get("default_executor", "local"))

    console = Console()
    _attach_printers(console)
    print(f"[M2C] Service: {console.api.base_url}")
    ok = asyncio.run(run_pipeline(console, name, mode, verify=verify))

    stages = console.store.get("stages")
    print("[M2C] Stages: " + ", ".join(f"{stage}={record['status']}" for stage, record in stages.items()))
    return ok


def main() -> None:
    """CLI entry point — accepts the meeting name as arguments or from stdin."""
    executor = None
    verify = True
    args = sys.argv[1:]

    if "--no-verify" in args:
        verify = False
        args.remove("--no-verify")

    if "--executor" in args:
        position = args.index("--executor")
        if position + 1 >= len(args):
            print("[M2C] --executor needs a value (cloud, local, developer)", file=sys.stderr)
            sys.exit(2)
        executor = args[position + 1]
        del args[position:position + 2]

    if args:
        meeting_name = " ".join(args)
    else:
        print("Enter the meeting name:")
        meeting_name = sys.stdin.readline()

    try:
        ok = run(meeting_name, executor=executor, verify=verify)
    except UserInputError as exc:
        print(f"[M2C] {exc}", file=sys.stderr)
        sys.exit(2)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
