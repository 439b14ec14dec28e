"""Remediation package – failure extraction, patch generation and healing."""

from remediation.base import FanOutStage, fan_out
from remediation.classifier import ClassifierStage
from remediation.extractor import FailureExtractor
from remediation.inference import GeminiClient, InferenceClient
from remediation.patch_generator import PatchGeneratorStage
from remediation.verifier import VerifierStage

# Orchestration
from remediation.pipeline import RemediationPipeline
from remediation.patch_engine import ApplicationReport, PatchApplicationEngine
from remediation.healing_loop import HealingLoopController, SandboxLeases

__all__ = [
    "FanOutStage",
    "fan_out",
    "InferenceClient",
    "GeminiClient",
    # 4 pipeline stages
    "FailureExtractor",
    "ClassifierStage",
    "PatchGeneratorStage",
    "VerifierStage",
    # Orchestration
    "RemediationPipeline",
    "PatchApplicationEngine",
    "ApplicationReport",
    "HealingLoopController",
    "SandboxLeases",
]
