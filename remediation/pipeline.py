"""Remediation pipeline – LangGraph-powered Extract → Classify → Patch → Verify.

The graph is a fixed linear chain; every extracted failure flows through
all four nodes and there is no branching between them (deciding whether
to apply anything is the healing loop's job):

    extract → classify → patch → verify → END

The pipeline only fails outright when Extract has no usable input (or
the inference service is down and the scanner fallback is disabled).
Otherwise it degrades per item and always returns a complete Report.
"""

from __future__ import annotations

import logging
from typing import Any, TypedDict

from langgraph.graph import END, StateGraph

from remediation.classifier import ClassifierStage
from remediation.extractor import FailureExtractor
from remediation.inference import GeminiClient, InferenceClient
from remediation.patch_generator import PatchGeneratorStage
from remediation.verifier import VerifierStage
from shared import determinism
from shared.errors import InputValidationError
from shared.reporting import compute_statistics
from shared.schemas import Report

logger = logging.getLogger(__name__)


class PipelineState(TypedDict, total=False):
    """LangGraph state; each node writes exactly one new key."""

    logs: str
    failures: list
    classified_failures: list
    generated_patches: list
    verified_patches: list
    final_fixes: list


class RemediationPipeline:
    """Sequences the four stages and aggregates their output into a Report."""

    def __init__(
        self,
        extractor: FailureExtractor,
        classifier: ClassifierStage,
        patch_generator: PatchGeneratorStage,
        verifier: VerifierStage,
    ):
        self.extractor = extractor
        self.classifier = classifier
        self.patch_generator = patch_generator
        self.verifier = verifier
        self._graph = self._build_graph()

    @classmethod
    def from_inference(
        cls,
        inference: InferenceClient,
        timeout: float | None = 60.0,
        max_concurrency: int | None = None,
        fallback_scanner: bool = True,
    ) -> "RemediationPipeline":
        """Wire all four stages to one inference client.

        A ``GeminiClient`` is cloned per stage so each gets its own
        output budget.
        """
        def _budget(max_tokens: int) -> InferenceClient:
            if isinstance(inference, GeminiClient):
                return inference.with_max_tokens(max_tokens)
            return inference

        return cls(
            extractor=FailureExtractor(
                _budget(determinism.EXTRACTOR_MAX_TOKENS),
                timeout=timeout,
                fallback_scanner=fallback_scanner,
            ),
            classifier=ClassifierStage(
                _budget(determinism.CLASSIFIER_MAX_TOKENS), timeout, max_concurrency,
            ),
            patch_generator=PatchGeneratorStage(
                _budget(determinism.PATCH_MAX_TOKENS), timeout, max_concurrency,
            ),
            verifier=VerifierStage(
                _budget(determinism.VERIFIER_MAX_TOKENS), timeout, max_concurrency,
            ),
        )

    # ── Graph nodes ──────────────────────────────────────────────────

    async def _extract_node(self, state: PipelineState) -> dict[str, Any]:
        return {"failures": await self.extractor.extract(state["logs"])}

    async def _classify_node(self, state: PipelineState) -> dict[str, Any]:
        return {"classified_failures": await self.classifier.run(state.get("failures", []))}

    async def _patch_node(self, state: PipelineState) -> dict[str, Any]:
        return {"generated_patches": await self.patch_generator.run(state.get("classified_failures", []))}

    async def _verify_node(self, state: PipelineState) -> dict[str, Any]:
        verified = await self.verifier.run(state.get("generated_patches", []))
        approved = [v for v in verified if v.approved]
        logger.info("[Pipeline] Verified %d/%d patches approved", len(approved), len(verified))
        return {"verified_patches": verified, "final_fixes": approved}

    def _build_graph(self):
        graph = StateGraph(PipelineState)
        graph.add_node("extract", self._extract_node)
        graph.add_node("classify", self._classify_node)
        graph.add_node("patch", self._patch_node)
        graph.add_node("verify", self._verify_node)

        graph.set_entry_point("extract")
        graph.add_edge("extract", "classify")
        graph.add_edge("classify", "patch")
        graph.add_edge("patch", "verify")
        graph.add_edge("verify", END)
        return graph.compile()

    # ── Public API ───────────────────────────────────────────────────

    async def run(self, logs: str) -> Report:
        """Run all four stages on *logs* and return the checked Report.

        Raises:
            InputValidationError: if *logs* is empty.
            CollaboratorUnavailableError: if extraction cannot run at all.
        """
        if not isinstance(logs, str) or not logs.strip():
            raise InputValidationError("No test logs provided")

        logger.info("[Pipeline] Starting remediation workflow (%d chars)", len(logs))
        state = await self._graph.ainvoke({"logs": logs})

        report = Report(
            failures=tuple(state.get("failures", [])),
            classified_failures=tuple(state.get("classified_failures", [])),
            generated_patches=tuple(state.get("generated_patches", [])),
            verified_patches=tuple(state.get("verified_patches", [])),
            final_fixes=tuple(state.get("final_fixes", [])),
        )
        report.check_invariants()

        logger.info(
            "[Pipeline] Complete: %d extracted, %d classified, %d patched, %d verified, %d approved",
            len(report.failures), len(report.classified_failures),
            len(report.generated_patches), len(report.verified_patches),
            len(report.final_fixes),
        )
        return report

    async def run_with_statistics(self, logs: str) -> tuple[Report, dict[str, Any]]:
        report = await self.run(logs)
        return report, compute_statistics(report)
