"""Verify flow — deploy, validate, and feed failures back into Build.

Deploy and validate are strictly sequential: validation only ever runs
against a URL produced by a successful deploy. Failed validations become
synthetic gap items (ids from ``verify_gap_id_base`` upward) that Build can
dispatch again without restarting the pipeline.
"""

import time

from m2c.config import get_config
from m2c.errors import DeployError
from m2c.event_bus import Events
from m2c.flows.analyze import GapBoard
from m2c.flows.build import BuildFlow
from m2c.stage_controller import StageController
from m2c.state import GapItem, ValidationResult
from m2c.store import Store
from m2c.utils.api import PipelineApi
from m2c.utils.matching import find_requirement_row
from m2c.utils.sse import DEPLOY_EVENTS, VALIDATE_EVENTS

LOG_CHANNEL = "qaWorkflowLogEntries"


def _evidence(result: ValidationResult) -> str:
    return (
        result.get("details")
        or result.get("evidence")
        or result.get("message")
        or ("Passed" if result.get("passed") else "Failed")
    )


class VerifyFlow:
    def __init__(
        self,
        store: Store,
        controller: StageController,
        api: PipelineApi,
        board: GapBoard,
        build: BuildFlow,
    ):
        self.store = store
        self.controller = controller
        self.api = api
        self.board = board
        self.build = build
        self.validation_results: list[ValidationResult] = []
        self.row_results: dict[int, ValidationResult] = {}
        self.validating_rows: set[int] = set()
        # Workflow step states: pending | active | done | failed
        self.steps = {"deploy": "pending", "validate": "pending"}
        self.running = False

    @property
    def deployed_url(self) -> str:
        return self.store.get("deployedUrl") or ""

    # --- Phases ---------------------------------------------------------

    async def run_deploy(self) -> str:
        """Deploy the current build. Returns the deployed URL."""
        url = ""
        self._emit(Events.DEPLOY_STARTED, {})
        async for event in self.api.stream(DEPLOY_EVENTS, json={}, fallback="Failed to start deployment"):
            data = event.data
            if event.name == "log":
                self._log(data.get("message", ""))
            elif event.name == "deploy-url":
                url = data.get("url") or url
            elif event.name == "complete":
                url = data.get("url") or url

        if not url:
            raise DeployError("Deployment finished without a URL")
        self.store.set("deployedUrl", url)
        self._log(f"Deployed to {url}")
        self._emit(Events.DEPLOY_COMPLETE, {"url": url})
        return url

    async def run_validation(self, url: str) -> list[ValidationResult]:
        """Validate every requirement against ``url``. Results may arrive in any order."""
        requirements = self.store.get("requirements") or []
        prefix_chars = get_config().get("match_prefix_chars", 40)
        self._emit(Events.VALIDATION_STARTED, {"url": url, "total": len(requirements)})

        async for event in self.api.stream(
            VALIDATE_EVENTS,
            json={"url": url, "requirements": requirements},
            fallback="Failed to start validation",
        ):
            data = event.data
            if event.name == "validation-start":
                index = data.get("requirementIndex")
                if not isinstance(index, int) or not 0 <= index < len(requirements):
                    index = find_requirement_row(requirements, data.get("requirement", ""), prefix_chars)
                if index is not None:
                    self.validating_rows.add(index)
                    self._emit(Events.VALIDATION_ITEM_START, {"index": index})
            elif event.name == "result":
                result = data.get("result") or data
                self.validation_results.append(result)
                index = find_requirement_row(requirements, result.get("requirement", ""), prefix_chars)
                self._emit(Events.VALIDATION_RESULT, {"index": index, "result": result})
                if index is None:
                    continue
                self.validating_rows.discard(index)
                self.row_results[index] = result
            elif event.name == "log":
                self._log(data.get("message", ""))

        return self.validation_results

    # --- Workflows ------------------------------------------------------

    async def launch_qa_workflow(self) -> bool:
        """Deploy, then validate. Returns True when both phases ran to the end."""
        if self.running:
            self.controller.advise("The QA workflow is already running.", "info")
            return False

        controller = self.controller
        self.running = True
        self._clear_results()
        self.steps = {"deploy": "active", "validate": "pending"}
        controller.set_qa_step("deploy")
        controller.set_status("Deployer running...", "processing")
        controller.set_active_agent("deployer")
        controller.update_loop_state({
            "active_stage": "verify",
            "stages": {"verify": {
                "status": "active",
                "start_time": time.time(),
                "metrics": {"primary": "Deploying...", "secondary": "", "statusText": "Deployer Running"},
            }},
        })

        try:
            try:
                url = await self.run_deploy()
            except Exception as exc:
                self._fail_phase("deploy", exc, "Deploy Failed")
                return False

            self.steps = {"deploy": "done", "validate": "active"}
            controller.set_qa_step("validate")
            controller.set_status("Validator running...", "processing")
            controller.set_active_agent("validator")
            controller.update_loop_state({
                "stages": {"verify": {"metrics": {"primary": "Validating...", "secondary": url}}},
            })

            try:
                await self.run_validation(url)
            except Exception as exc:
                self._fail_phase("validate", exc, "Validation Failed")
                return False

            self._finish_validation()
            return True
        finally:
            self.running = False

    async def run_deploy_only(self) -> bool:
        if self.running:
            self.controller.advise("The QA workflow is already running.", "info")
            return False

        controller = self.controller
        self.running = True
        self.steps["deploy"] = "active"
        controller.set_qa_step("deploy")
        controller.set_status("Deployer running...", "processing")
        controller.set_active_agent("deployer")
        try:
            url = await self.run_deploy()
        except Exception as exc:
            self.steps["deploy"] = "failed"
            controller.advise(str(exc) or "Deployment failed")
            controller.set_status("Deploy Failed", "error")
            return False
        finally:
            self.running = False

        self.steps["deploy"] = "done"
        controller.set_status("Deployed")
        controller.update_loop_state({"stages": {"verify": {"metrics": {"secondary": url}}}})
        return True

    async def run_validate_only(self) -> bool:
        """Re-validate the last deployment. Rejected when nothing was deployed yet."""
        controller = self.controller
        url = self.deployed_url
        if not url:
            controller.advise("No deployed URL yet. Run a deploy first.", "info")
            return False
        if self.running:
            controller.advise("The QA workflow is already running.", "info")
            return False

        self.running = True
        self._clear_results()
        self.steps["validate"] = "active"
        controller.set_qa_step("validate")
        controller.set_status("Validator running...", "processing")
        controller.set_active_agent("validator")
        self._log(f"Validator starting (validate only) against {url}")
        try:
            try:
                await self.run_validation(url)
            except Exception as exc:
                self._fail_phase("validate", exc, "Validation Failed")
                return False
            self._finish_validation()
            return True
        finally:
            self.running = False

    # --- Re-entrant failure loop ----------------------------------------

    def get_failed_validation_gaps(self) -> list[GapItem]:
        """Turn each failed validation into a dispatchable gap item."""
        requirements = self.store.get("requirements") or []
        base = get_config().get("verify_gap_id_base", 9000)
        failed = [r for r in self.validation_results if not r.get("passed")]

        gaps: list[GapItem] = []
        for offset, result in enumerate(failed):
            requirement = result.get("requirement", "")
            index = next(
                (i for i, text in enumerate(requirements) if text.strip() == requirement.strip()),
                result.get("requirementIndex", -1),
            )
            gaps.append({
                "id": base + offset,
                "requirement": requirement,
                "gap": f"Verification failed: {result.get('details') or 'Did not pass validation'}",
                "details": result.get("details", ""),
                "currentState": "Deployed but failing validation",
                "complexity": "Medium",
                "estimatedEffort": "Fix required",
                "hasGap": True,
                "selected": True,
                "source": "verify",
                "requirementIndex": index,
            })
        return gaps

    def redispatch_from_verify(self) -> list[GapItem]:
        """Fix & Rebuild: move failed validations back into Build as a new iteration."""
        controller = self.controller
        failed = self.get_failed_validation_gaps()
        if not failed:
            controller.advise("No failed validations to rebuild.", "info")
            return []

        new_gaps = self.build.inject_verify_failures(failed)
        iteration = (self.store.get("meeting.iteration") or 1) + 1
        self._log(f"Fix & Rebuild: {len(new_gaps)} failing requirement(s) back to Build (iteration {iteration})")
        controller.set_active_phase("build")
        controller.set_status(f"{len(new_gaps)} To Fix")
        controller.update_loop_state({
            "iteration": iteration,
            "active_stage": None,
            "stages": {"build": {
                "status": "waiting",
                "metrics": {"primary": f"{len(new_gaps)} to fix", "statusText": "Waiting..."},
            }},
        })
        controller.show_panel("panel-issues")
        return new_gaps

    # --- QA table view model --------------------------------------------

    def qa_rows(self) -> list[dict]:
        """One row per requirement joining gap, dispatch, issue, and validation."""
        requirements = self.store.get("requirements") or []
        issues = self.store.get("createdIssues") or []
        issue_by_gap = {issue.get("gapId"): issue for issue in issues if issue.get("gapId") is not None}

        rows = []
        for index, requirement in enumerate(requirements):
            candidates = [g for g in self.board.all() if g.get("requirementIndex") == index]
            # A verify item for the row is the newer information
            candidates.sort(key=lambda g: g.get("source") == "verify", reverse=True)
            gap = candidates[0] if candidates else None
            gap_id = gap["id"] if gap else None
            result = self.row_results.get(index)

            if index in self.validating_rows:
                validation = "validating"
            elif result is None:
                validation = "pending"
            else:
                validation = "pass" if result.get("passed") else "fail"

            rows.append({
                "index": index,
                "requirement": requirement,
                "gap": gap,
                "hasGap": bool(gap and gap.get("hasGap")),
                "dispatched": gap_id is not None and gap_id in self.build.tracker,
                "issue": issue_by_gap.get(gap_id),
                "validation": validation,
                "evidence": _evidence(result) if result else "",
            })
        return rows

    def qa_summary(self) -> str:
        requirements = self.store.get("requirements") or []
        gaps, met = self.board.counts()
        parts = [f"{len(requirements)} requirements"]
        if gaps or met:
            parts.append(f"{gaps} gaps")
        if met:
            parts.append(f"{met} met")
        if len(self.build.tracker):
            parts.append(f"{len(self.build.tracker)} dispatched")
        if self.validation_results:
            passed, failed = self._tally()
            parts.append(f"{passed} pass · {failed} fail")
            if failed:
                parts.append("Not ready to ship")
            elif passed:
                parts.append("Ready to ship")
        return " · ".join(parts)

    def qa_button_state(self) -> tuple[str, str]:
        """(action key, label) for the primary QA button."""
        _, failed = self._tally()
        if failed:
            return "fix", "Fix & Rebuild"
        return "redeploy", "Re-deploy & Validate"

    def reset(self) -> None:
        self._clear_results()
        self.steps = {"deploy": "pending", "validate": "pending"}
        self.running = False

    # --- Helpers --------------------------------------------------------

    def _log(self, message: str) -> None:
        self.controller.append_log(LOG_CHANNEL, message)

    def _emit(self, event: str, data: dict) -> None:
        self.controller.bus.emit(event, data)

    def _tally(self) -> tuple[int, int]:
        passed = sum(1 for r in self.validation_results if r.get("passed"))
        return passed, len(self.validation_results) - passed

    def _clear_results(self) -> None:
        self.validation_results = []
        self.row_results = {}
        self.validating_rows = set()

    def _fail_phase(self, phase: str, exc: Exception, status: str) -> None:
        """Mark only the in-flight phase failed; the other phase keeps its state."""
        self.steps[phase] = "failed"
        self.validating_rows = set()
        self.controller.advise(str(exc) or status)
        self.controller.set_status(status, "error")
        self.controller.update_loop_state({
            "stages": {"verify": {"status": "error", "metrics": {"statusText": status}}},
        })

    def _finish_validation(self) -> None:
        controller = self.controller
        passed, failed = self._tally()
        total = passed + failed
        all_passed = total > 0 and failed == 0
        self._emit(Events.VALIDATION_COMPLETE, {"passed": passed, "failed": failed})

        self.steps["validate"] = "done" if all_passed else "failed"
        controller.set_qa_step("complete")
        if all_passed:
            controller.set_status(f"Validator: All {total} Passed")
            self._log(f"Validator complete: {passed}/{total} passed. All meeting requirements met.")
        else:
            controller.set_status(f"Validator: {failed} of {total} Failed", "error")
            self._log(f"Validator report: {passed} passed, {failed} failed out of {total}. Not ready to ship.")

        controller.update_loop_state({
            "stages": {"verify": {
                "status": "complete" if all_passed else "error",
                "end_time": time.time(),
                "metrics": {
                    "primary": f"{passed} pass / {failed} fail",
                    "statusText": "Complete ✓" if all_passed else "Not Passed",
                },
            }},
        })
