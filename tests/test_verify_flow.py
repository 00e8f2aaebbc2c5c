"""Tests for m2c.flows.verify — deploy/validate sequencing and the failure loop."""

import asyncio

import pytest

from m2c.event_bus import Events

DEPLOYED = "https://shop-staging.azurewebsites.net"


def _result(requirement, passed, details=""):
    return ("result", {"result": {"requirement": requirement, "passed": passed, "details": details}})


@pytest.fixture
def ready(console, requirements, make_gap):
    """Pipeline state right after a successful dispatch."""
    console.store.set("requirements", requirements)
    console.board.replace([make_gap(i + 1, text) for i, text in enumerate(requirements[:3])])
    console.build.tracker.add([1, 2, 3])
    console.controller.update_loop_state({"stages": {"verify": {"status": "waiting"}}})
    return requirements


class TestRunValidation:
    def test_out_of_order_results_matched_by_text(self, console, service, ready):
        service.on("/api/validate", [
            ("validation-start", {"requirementIndex": 0, "requirement": ready[0]}),
            _result(ready[3], True),
            _result("  " + ready[1] + "  ", False, "Chart is empty"),
            _result(ready[0].upper() + " via a signed link", True),
            _result("Completely unrelated requirement", False),
        ])

        asyncio.run(console.verify.run_validation(DEPLOYED))

        verify = console.verify
        assert service.bodies("/api/validate") == [{"url": DEPLOYED, "requirements": ready}]
        assert set(verify.row_results) == {0, 1, 3}
        assert verify.row_results[1]["passed"] is False
        assert verify.validating_rows == set()
        assert len(verify.validation_results) == 4

    def test_validation_start_without_index_uses_text(self, console, service, ready):
        service.on("/api/validate", [("validation-start", {"requirement": ready[2]})])
        asyncio.run(console.verify.run_validation(DEPLOYED))
        assert console.verify.validating_rows == {2}


class TestLaunchQaWorkflow:
    def test_deploy_then_validate(self, console, service, ready):
        service.on("/api/deploy", [("log", {"message": "Building image"}), ("deploy-url", {"url": DEPLOYED}), ("complete", {})])
        service.on("/api/validate", [_result(text, True) for text in ready])

        ok = asyncio.run(console.verify.launch_qa_workflow())

        store = console.store
        assert ok is True
        assert [r.url.path for r in service.requests] == ["/api/deploy", "/api/validate"]
        assert store.get("deployedUrl") == DEPLOYED
        assert store.get("stages.verify.status") == "complete"
        assert store.get("stages.verify.metrics.primary") == "5 pass / 0 fail"
        assert store.get("activeStage") is None
        assert console.verify.steps == {"deploy": "done", "validate": "done"}
        assert console.verify.running is False
        assert console.verify.qa_button_state() == ("redeploy", "Re-deploy & Validate")
        assert "verify" in console.controller.completed_phases

    def test_failing_validations(self, console, service, ready):
        service.on("/api/deploy", [("complete", {"url": DEPLOYED})])
        service.on("/api/validate", [
            _result(ready[0], False, "No email sent"),
            _result(ready[1], True),
            _result(ready[2], False, "CSV button missing"),
            _result(ready[3], True),
            _result(ready[4], True),
        ])

        asyncio.run(console.verify.launch_qa_workflow())

        assert console.store.get("stages.verify.status") == "error"
        assert console.store.get("stages.verify.metrics.primary") == "3 pass / 2 fail"
        assert console.verify.steps["validate"] == "failed"
        assert console.verify.qa_button_state() == ("fix", "Fix & Rebuild")

    def test_deploy_without_url_aborts_before_validation(self, console, service, ready, toasts):
        service.on("/api/deploy", [("log", {"message": "done?"}), ("complete", {})])

        ok = asyncio.run(console.verify.launch_qa_workflow())

        assert ok is False
        assert [r.url.path for r in service.requests] == ["/api/deploy"]
        assert console.verify.steps == {"deploy": "failed", "validate": "pending"}
        assert console.store.get("stages.verify.status") == "error"
        assert toasts[-1]["message"] == "Deployment finished without a URL"

    def test_validation_failure_keeps_deploy_done(self, console, service, ready, toasts):
        service.on("/api/deploy", [("deploy-url", {"url": DEPLOYED})])
        service.on("/api/validate", status=500, error_body={"error": "Browser crashed"})

        ok = asyncio.run(console.verify.launch_qa_workflow())

        assert ok is False
        assert console.verify.steps == {"deploy": "done", "validate": "failed"}
        assert toasts[-1] == {"message": "Browser crashed", "level": "error"}

    def test_rerun_clears_previous_results(self, console, service, ready):
        service.on("/api/deploy", [("deploy-url", {"url": DEPLOYED})])
        service.on("/api/validate", [_result(ready[0], False)])
        asyncio.run(console.verify.launch_qa_workflow())

        service.on("/api/validate", [_result(ready[1], True)])
        asyncio.run(console.verify.launch_qa_workflow())

        assert [r["requirement"] for r in console.verify.validation_results] == [ready[1]]
        assert set(console.verify.row_results) == {1}

    def test_progress_published_on_bus(self, console, service, bus, ready):
        seen = []
        for event in (Events.DEPLOY_STARTED, Events.DEPLOY_COMPLETE, Events.VALIDATION_STARTED,
                      Events.VALIDATION_ITEM_START, Events.VALIDATION_RESULT, Events.VALIDATION_COMPLETE):
            bus.on(event, lambda data, event=event: seen.append((event, data)))
        service.on("/api/deploy", [("deploy-url", {"url": DEPLOYED})])
        service.on("/api/validate", [
            ("validation-start", {"requirementIndex": 1}),
            _result(ready[1], False, "Chart is empty"),
        ])

        asyncio.run(console.verify.launch_qa_workflow())

        assert [name for name, _ in seen] == [
            Events.DEPLOY_STARTED, Events.DEPLOY_COMPLETE, Events.VALIDATION_STARTED,
            Events.VALIDATION_ITEM_START, Events.VALIDATION_RESULT, Events.VALIDATION_COMPLETE,
        ]
        assert seen[1][1] == {"url": DEPLOYED}
        assert seen[4][1]["index"] == 1
        assert seen[5][1] == {"passed": 0, "failed": 1}


class TestPartialRuns:
    def test_validate_only_requires_deploy(self, console, service, ready, toasts):
        ok = asyncio.run(console.verify.run_validate_only())
        assert ok is False
        assert service.requests == []
        assert toasts[0]["level"] == "info"

    def test_validate_only_reuses_url(self, console, service, ready):
        console.store.set("deployedUrl", DEPLOYED)
        service.on("/api/validate", [_result(ready[0], True)])

        assert asyncio.run(console.verify.run_validate_only()) is True
        assert service.bodies("/api/validate")[0]["url"] == DEPLOYED

    def test_deploy_only(self, console, service, ready):
        service.on("/api/deploy", [("deploy-url", {"url": DEPLOYED})])
        assert asyncio.run(console.verify.run_deploy_only()) is True
        assert console.verify.deployed_url == DEPLOYED
        assert console.verify.steps["deploy"] == "done"


class TestFailureLoop:
    def test_failed_validations_become_gaps(self, console, service, ready):
        console.store.set("deployedUrl", DEPLOYED)
        service.on("/api/validate", [
            _result(ready[0], True),
            _result(ready[1], False, "Chart is empty"),
            _result(ready[2], True),
            _result(ready[3], False),
            _result(ready[4], True),
        ])
        asyncio.run(console.verify.run_validate_only())

        gaps = console.verify.get_failed_validation_gaps()

        assert len(gaps) == 2
        assert all(g["hasGap"] and g["source"] == "verify" and g["id"] >= 9000 for g in gaps)
        assert gaps[0]["gap"] == "Verification failed: Chart is empty"
        assert gaps[0]["requirementIndex"] == 1
        assert gaps[1]["gap"] == "Verification failed: Did not pass validation"

        service.on("/api/validate", [_result(text, True) for text in ready])
        asyncio.run(console.verify.run_validate_only())
        assert console.verify.get_failed_validation_gaps() == []

    def test_redispatch_from_verify(self, console, service, ready):
        console.store.set("deployedUrl", DEPLOYED)
        service.on("/api/validate", [_result(ready[3], False, "Button does nothing"), _result(ready[0], False)])
        asyncio.run(console.verify.run_validate_only())

        new = console.verify.redispatch_from_verify()

        # Requirement 0 still has its open analyze gap, so only requirement 3 re-enters
        assert [g["requirement"] for g in new] == [ready[3]]
        assert new[0]["id"] not in console.build.tracker
        assert console.store.get("meeting.iteration") == 2
        assert console.store.get("stages.build.status") == "waiting"
        assert console.controller.current_panel == "panel-issues"
        assert console.store.get("activeStage") is None
        assert console.build.dispatch_counts()["remaining"] == 1

    def test_redispatch_without_failures(self, console, ready, toasts):
        assert console.verify.redispatch_from_verify() == []
        assert toasts[0]["level"] == "info"


class TestQaView:
    def test_rows_and_summary(self, console, service, ready):
        console.store.set("createdIssues", [{"number": 101, "url": "u", "title": "t", "gapId": 1}])
        console.store.set("deployedUrl", DEPLOYED)
        service.on("/api/validate", [_result(ready[0], True), _result(ready[1], False)])
        asyncio.run(console.verify.run_validate_only())

        rows = console.verify.qa_rows()

        assert len(rows) == 5
        assert rows[0]["issue"]["number"] == 101
        assert rows[0]["dispatched"] is True
        assert rows[0]["validation"] == "pass"
        assert rows[1]["validation"] == "fail"
        assert rows[1]["evidence"] == "Failed"
        assert rows[4]["gap"] is None
        assert rows[4]["validation"] == "pending"
        summary = console.verify.qa_summary()
        assert summary.startswith("5 requirements · 3 gaps · 3 dispatched")
        assert "1 pass · 1 fail" in summary
        assert summary.endswith("Not ready to ship")
