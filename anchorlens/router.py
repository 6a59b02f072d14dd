from .models import MCPRequest
from .controllers.analysis import analyze_source, list_rules
from .utils.errors import error_response
from typing import Any, Optional
import logging

logger = logging.getLogger("anchorlens.router")


async def route_request(raw_msg: dict, on_update: Optional[Any] = None) -> dict:
    try:
        # Validate request structure
        req = MCPRequest(**raw_msg)

        logger.info(f"Routing request: {req.request_id} Action: {req.action}")

        if req.action == "analyze":
            return await analyze_source(req, on_update=on_update)

        if req.action == "rules":
            return await list_rules(req)

        # Default fallback for unknown actions
        return error_response(
            req.request_id,
            "UNKNOWN_ACTION",
            f"Unsupported action: {req.action}"
        )

    except Exception as e:
        logger.error(f"Routing error: {str(e)}")
        # If we can't parse the request_id, use "unknown" or try to retrieve it safely
        req_id = raw_msg.get("request_id", "unknown") if isinstance(raw_msg, dict) else "unknown"
        return error_response(
            req_id,
            "INTERNAL_ERROR",
            str(e)
        )
