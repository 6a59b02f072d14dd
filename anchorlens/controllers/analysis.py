"""
Analysis Controller: runs the analysis pipeline for routed requests.

Handles: analyze, rules
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from anchorlens.config import get_settings
from anchorlens.models import AnalysisConfig, MCPRequest
from anchorlens.services.pipeline_engine import AnalysisPipelineEngine
from anchorlens.services.rule_database import get_rule_database
from anchorlens.utils.errors import AnchorLensError, error_response

logger = logging.getLogger("anchorlens.analysis")


def build_config(raw: Optional[Dict[str, Any]]) -> AnalysisConfig:
    """Request config layered over the environment defaults."""
    settings = get_settings()
    merged: Dict[str, Any] = {
        "compute_budget": settings.compute_budget,
        "severity_threshold": settings.severity_threshold,
    }
    merged.update(raw or {})
    return AnalysisConfig.model_validate(merged)


class AnalysisController:
    """Validates analyze requests and turns pipeline results into responses."""

    def __init__(self) -> None:
        self.engine = AnalysisPipelineEngine()

    async def analyze(self, req: MCPRequest, on_update: Optional[Any] = None) -> Dict[str, Any]:
        code = req.payload.get("code", "")
        if not isinstance(code, str) or not code.strip():
            return error_response(req.request_id, "InvalidRequest", "payload.code is required")

        try:
            config = build_config(req.payload.get("config"))
        except ValidationError as e:
            return error_response(req.request_id, "InvalidRequest", f"Invalid config: {e}")

        try:
            report = await self.engine.analyze(code, config, on_update=on_update)
        except AnchorLensError as e:
            logger.warning(f"Analysis {req.request_id} failed: {e.kind.value}: {e.message}")
            return error_response(req.request_id, e.kind.value, e.message, e.location)

        return {
            "request_id": req.request_id,
            "type": "success",
            "data": report.model_dump(mode="json"),
        }

    async def rules(self, req: MCPRequest) -> Dict[str, Any]:
        return {
            "request_id": req.request_id,
            "type": "success",
            "data": {"rules": get_rule_database().to_list()},
        }


_controller_instance: Optional[AnalysisController] = None


def _get_controller() -> AnalysisController:
    global _controller_instance
    if _controller_instance is None:
        _controller_instance = AnalysisController()
    return _controller_instance


async def analyze_source(req: MCPRequest, on_update: Optional[Any] = None) -> Dict[str, Any]:
    """Entry point called by router. Delegates to AnalysisController."""
    return await _get_controller().analyze(req, on_update=on_update)


async def list_rules(req: MCPRequest) -> Dict[str, Any]:
    return await _get_controller().rules(req)
