"""
Pipeline package for ChatBI.

Contains the bounded self-correction loop and the orchestrator that runs a
chat request end to end.
"""

from chatbi.pipeline.correction import SelfCorrectionLoop
from chatbi.pipeline.orchestrator import ChatPipeline, PipelineRequest, PipelineResult

__all__ = ["ChatPipeline", "PipelineRequest", "PipelineResult", "SelfCorrectionLoop"]
