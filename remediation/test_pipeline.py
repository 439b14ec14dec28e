"""Integration tests for the remediation pipeline.

Inference is replaced by a prompt-routing fake (no network required) so
per-item failures can be injected into any stage.

Run:
    python -m pytest remediation/test_pipeline.py -v
"""

from __future__ import annotations

import asyncio
import json

import pytest

from remediation.base import fan_out
from remediation.classifier import ClassifierStage, parse_category
from remediation.extractor import FailureExtractor, validate_failures
from remediation.patch_generator import PatchGeneratorStage, parse_patch_response
from remediation.pipeline import RemediationPipeline
from remediation.verifier import VerifierStage, parse_verdict
from shared.errors import (
    CollaboratorUnavailableError,
    InputValidationError,
    MalformedResponseError,
)
from shared.schemas import (
    BugCategory,
    ClassifiedFailure,
    Failure,
    ManualReview,
    Patch,
    ShellCommand,
    Substitution,
    VerificationStatus,
)

OFFLINE_LOGS = "FAIL a.js\n  TypeError: x is not defined at a.js:10"


# ── Helpers ──────────────────────────────────────────────────────────

class OfflineInference:
    """Every call fails as if the inference service were unreachable."""

    def __init__(self):
        self.calls = 0

    async def complete(self, prompt: str) -> str:
        self.calls += 1
        raise CollaboratorUnavailableError("inference offline")


class RoutedInference:
    """Answers by stage, keyed on the prompt header.

    Each handler receives the prompt and returns text or raises.
    """

    def __init__(self, extract=None, classify=None, patch=None, verify=None):
        self.handlers = {
            "Error Extraction Agent": extract,
            "Classify this error": classify,
            "Patch Generation Agent": patch,
            "Patch Verification Agent": verify,
        }
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        for marker, handler in self.handlers.items():
            if marker in prompt:
                if handler is None:
                    raise CollaboratorUnavailableError(f"no handler for {marker}")
                return handler(prompt)
        raise AssertionError(f"Unexpected prompt: {prompt[:80]}")


def _extract_three(prompt: str) -> str:
    return json.dumps([
        {"file": "src/a.js", "line": 3, "error_message": "boom-1"},
        {"file": "src/b.js", "line": 7, "error_message": "boom-2"},
        {"file": "src/c.js", "error_message": "boom-3"},
    ])


def _substitution(prompt: str) -> str:
    return json.dumps({"kind": "substitution", "old": "var", "new": "let", "expected_output": "passes"})


def _approve(prompt: str) -> str:
    return "APPROVED"


def _failure(index: int = 1, message: str = "boom") -> Failure:
    return Failure(id=f"F-{index:03d}", source_file="a.js", source_line=index, message=message)


# ── Pipeline ─────────────────────────────────────────────────────────

class TestPipeline:

    def test_offline_scenario_degrades_every_stage(self):
        pipeline = RemediationPipeline.from_inference(OfflineInference(), timeout=5)
        report, stats = asyncio.run(pipeline.run_with_statistics(OFFLINE_LOGS))

        assert len(report.failures) == 1
        failure = report.failures[0]
        assert (failure.source_file, failure.source_line) == ("a.js", 10)
        assert failure.message == "TypeError: x is not defined"

        assert report.classified_failures[0].category is BugCategory.UNKNOWN
        assert report.generated_patches[0].instructions == "manual review needed"
        assert report.verified_patches[0].status is VerificationStatus.PENDING_REVIEW
        assert report.final_fixes == ()

        assert stats == {
            "total_failures": 1,
            "classified": 1,
            "patched": 1,
            "verified": 1,
            "approved": 0,
            "approval_rate": "0.00%",
        }

    def test_offline_without_scanner_is_a_hard_failure(self):
        pipeline = RemediationPipeline.from_inference(OfflineInference(), fallback_scanner=False)
        with pytest.raises(CollaboratorUnavailableError):
            asyncio.run(pipeline.run(OFFLINE_LOGS))

    def test_stages_stay_aligned_with_injected_failures(self):
        def classify(prompt: str) -> str:
            if "boom-2" in prompt:
                raise CollaboratorUnavailableError("flaky")
            return "SYNTAX"

        def patch(prompt: str) -> str:
            if "boom-3" in prompt:
                return "I cannot help with that"
            return _substitution(prompt)

        inference = RoutedInference(
            extract=_extract_three, classify=classify, patch=patch, verify=_approve,
        )
        report = asyncio.run(RemediationPipeline.from_inference(inference).run("3 failed"))

        ids = ["F-001", "F-002", "F-003"]
        assert [f.id for f in report.failures] == ids
        assert [c.id for c in report.classified_failures] == ids
        assert [p.id for p in report.generated_patches] == ids
        assert [v.id for v in report.verified_patches] == ids

        assert report.failures[2].source_line == 0
        assert [c.category for c in report.classified_failures] == [
            BugCategory.SYNTAX, BugCategory.UNKNOWN, BugCategory.SYNTAX,
        ]
        assert isinstance(report.generated_patches[2].instruction, ManualReview)
        assert [v.status for v in report.verified_patches] == [
            VerificationStatus.APPROVED,
            VerificationStatus.APPROVED,
            VerificationStatus.PENDING_REVIEW,
        ]
        assert [f.id for f in report.final_fixes] == ["F-001", "F-002"]
        assert all(f in report.verified_patches for f in report.final_fixes)

    def test_verifier_rejections_are_excluded_from_final_fixes(self):
        def verify(prompt: str) -> str:
            return "REJECTED - too broad" if "src/b.js" in prompt else "APPROVED"

        inference = RoutedInference(
            extract=_extract_three, classify=lambda p: "LOGIC", patch=_substitution, verify=verify,
        )
        report, stats = asyncio.run(
            RemediationPipeline.from_inference(inference).run_with_statistics("3 failed")
        )

        assert [f.id for f in report.final_fixes] == ["F-001", "F-003"]
        assert stats["approval_rate"] == "66.67%"

    def test_no_failures_gives_empty_report(self):
        inference = RoutedInference(extract=lambda p: "[]")
        report, stats = asyncio.run(
            RemediationPipeline.from_inference(inference).run_with_statistics("all green")
        )

        assert report.failures == ()
        assert stats["approval_rate"] == "N/A"
        assert len(inference.prompts) == 1

    @pytest.mark.parametrize("logs", ["", "   \n"])
    def test_empty_logs_rejected(self, logs):
        inference = OfflineInference()
        with pytest.raises(InputValidationError):
            asyncio.run(RemediationPipeline.from_inference(inference).run(logs))
        assert inference.calls == 0


# ── Extractor ────────────────────────────────────────────────────────

class TestExtractor:

    def test_fenced_json_is_accepted(self):
        inference = RoutedInference(
            extract=lambda p: '```json\n[{"file": "a.py", "line": "4", "message": "E"}]\n```',
        )
        failures = asyncio.run(FailureExtractor(inference).extract("logs"))

        assert failures == [Failure(id="F-001", source_file="a.py", source_line=4, message="E")]

    def test_one_invalid_item_discards_the_whole_response(self):
        inference = RoutedInference(extract=lambda p: json.dumps([
            {"file": "a.py", "line": 1, "error_message": "ok"},
            {"line": 2, "error_message": "no file"},
        ]))
        assert asyncio.run(FailureExtractor(inference).extract("logs")) == []

    def test_non_json_response_gives_empty_list(self):
        inference = RoutedInference(extract=lambda p: "Sorry, I found nothing.")
        assert asyncio.run(FailureExtractor(inference).extract("logs")) == []

    def test_duplicates_are_kept(self):
        item = {"file": "a.py", "line": 1, "error_message": "same"}
        inference = RoutedInference(extract=lambda p: json.dumps([item, item]))
        failures = asyncio.run(FailureExtractor(inference).extract("logs"))

        assert [f.id for f in failures] == ["F-001", "F-002"]
        assert failures[0].message == failures[1].message

    @pytest.mark.parametrize("payload", [
        {"file": "a.py"},
        [{"file": "a.py", "line": -1, "error_message": "x"}],
        [{"file": "a.py", "line": True, "error_message": "x"}],
        ["not an object"],
    ])
    def test_validation_rejects_bad_structures(self, payload):
        with pytest.raises(MalformedResponseError):
            validate_failures(payload)


# ── Fan-out stages ───────────────────────────────────────────────────

class TestStages:

    def test_fan_out_keeps_order_and_replaces_failures(self):
        async def worker(n: int) -> int:
            await asyncio.sleep(0.01 * (5 - n))
            if n == 2:
                raise ValueError("bad item")
            return n * 10

        results = asyncio.run(fan_out([1, 2, 3, 4], worker, lambda n, e: -n))
        assert results == [10, -2, 30, 40]

    def test_fan_out_respects_concurrency_limit(self):
        active = {"now": 0, "peak": 0}

        async def worker(n: int) -> int:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return n

        results = asyncio.run(fan_out(list(range(6)), worker, lambda n, e: -1, max_concurrency=2))
        assert results == list(range(6))
        assert active["peak"] <= 2

    def test_timeout_becomes_sentinel(self):
        class SlowInference:
            async def complete(self, prompt: str) -> str:
                await asyncio.sleep(5)
                return "SYNTAX"

        stage = ClassifierStage(SlowInference(), timeout=0.05)
        results = asyncio.run(stage.run([_failure(1), _failure(2)]))

        assert [r.category for r in results] == [BugCategory.UNKNOWN, BugCategory.UNKNOWN]
        assert [r.id for r in results] == ["F-001", "F-002"]

    def test_empty_input_makes_no_calls(self):
        inference = OfflineInference()
        assert asyncio.run(VerifierStage(inference).run([])) == []
        assert inference.calls == 0

    def test_manual_review_patch_skips_verification_call(self):
        inference = RoutedInference(verify=_approve)
        patch = Patch(
            classified=ClassifiedFailure(failure=_failure(), category=BugCategory.UNKNOWN),
            instruction=ManualReview(),
        )
        results = asyncio.run(VerifierStage(inference).run([patch]))

        assert results[0].status is VerificationStatus.PENDING_REVIEW
        assert inference.prompts == []

    def test_empty_verifier_reply_is_pending_review(self):
        inference = RoutedInference(verify=lambda p: "   ")
        patch = Patch(
            classified=ClassifiedFailure(failure=_failure(), category=BugCategory.SYNTAX),
            instruction=ShellCommand(text="npm install"),
        )
        results = asyncio.run(VerifierStage(inference).run([patch]))
        assert results[0].status is VerificationStatus.PENDING_REVIEW


class TestParsers:

    @pytest.mark.parametrize("reply, expected", [
        ("APPROVED", VerificationStatus.APPROVED),
        ("approved.", VerificationStatus.APPROVED),
        ("```\nAPPROVED\n```", VerificationStatus.APPROVED),
        ("REJECTED", VerificationStatus.REJECTED),
        ("NOT APPROVED", VerificationStatus.REJECTED),
        ("APPROVED? No, rejected.", VerificationStatus.REJECTED),
        ("The patch looks fine to me", VerificationStatus.REJECTED),
        ("DISAPPROVED", VerificationStatus.REJECTED),
    ])
    def test_verdict_is_fail_closed(self, reply, expected):
        assert parse_verdict(reply) is expected

    @pytest.mark.parametrize("reply", ["", "   ", "```\n```"])
    def test_empty_verdict_raises(self, reply):
        with pytest.raises(MalformedResponseError):
            parse_verdict(reply)

    @pytest.mark.parametrize("reply, expected", [
        ("SYNTAX", BugCategory.SYNTAX),
        ("  type error. ", BugCategory.TYPE_ERROR),
        ('"IMPORT"', BugCategory.IMPORT),
    ])
    def test_category_normalisation(self, reply, expected):
        assert parse_category(reply) is expected

    @pytest.mark.parametrize("reply", ["UNKNOWN", "SYNTAX or LOGIC", "banana"])
    def test_unrecognised_category_raises(self, reply):
        with pytest.raises(MalformedResponseError):
            parse_category(reply)

    def test_patch_response_dialects(self):
        sub, expected = parse_patch_response(
            '{"kind": "substitution", "old": "x =", "new": "", "expected_output": "ok"}'
        )
        assert sub == Substitution(old="x =", new="")
        assert expected == "ok"

        cmd, _ = parse_patch_response('{"kind": "command", "command": " npm install lodash "}')
        assert cmd == ShellCommand(text="npm install lodash")

        legacy, observable = parse_patch_response(
            '{"patch_instructions": "foo() → bar()", "required_dashboard_output": "green"}'
        )
        assert legacy == Substitution(old="foo()", new="bar()")
        assert observable == "green"

    @pytest.mark.parametrize("reply", [
        "not json",
        '["a list"]',
        '{"kind": "substitution", "new": "x"}',
        '{"kind": "rewrite"}',
        '{"patch_instructions": "manual review needed"}',
    ])
    def test_unusable_patch_responses_raise(self, reply):
        with pytest.raises(MalformedResponseError):
            parse_patch_response(reply)


class TestPatchGenerator:

    def test_failed_generation_becomes_manual_review(self):
        inference = RoutedInference(patch=lambda p: "{}")
        classified = ClassifiedFailure(failure=_failure(), category=BugCategory.LOGIC)
        results = asyncio.run(PatchGeneratorStage(inference).run([classified]))

        assert isinstance(results[0].instruction, ManualReview)
        assert results[0].instructions == "manual review needed"
        assert results[0].classified is classified
