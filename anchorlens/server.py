from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
from fastapi.middleware.cors import CORSMiddleware
from .config import get_settings
from .models import AnalyzeRequest, ErrorKind
from .router import route_request
from .services.pipeline_engine import get_analysis_engine
from .services.rule_database import get_rule_database
from .utils.errors import AnchorLensError
import uvicorn
import logging
import uuid

# Configure logging
logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger("anchorlens.server")

app = FastAPI(title="AnchorLens")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError):
    logger.warning(f"Rejected request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"type": "error", "error": {"code": ErrorKind.INVALID_REQUEST.value, "message": str(exc.errors())}},
    )


@app.get("/")
async def health_check():
    return {"status": "ok", "service": "AnchorLens", "version": "0.1.0"}


@app.get("/api/rules")
async def rules():
    return {"rules": get_rule_database().to_list()}


@app.post("/api/analyze")
async def analyze(body: AnalyzeRequest):
    try:
        report = await get_analysis_engine().analyze(body.code, body.config)
    except AnchorLensError as e:
        logger.warning(f"Analysis failed: {e.kind.value}: {e.message}")
        return JSONResponse(
            status_code=422,
            content={"type": "error", "error": {"code": e.kind.value, "message": e.message, "location": e.location}},
        )
    return report.model_dump(mode="json")


@app.websocket("/ws/analyze")
async def analyze_ws(ws: WebSocket):
    await ws.accept()
    logger.info("Client connected")

    # Callback to send stage updates back to the client
    async def send_update(update_msg: dict):
        try:
            if ws.client_state == WebSocketState.CONNECTED:
                await ws.send_json(update_msg)
        except Exception as e:
            logger.error(f"Failed to send update: {e}")

    try:
        while True:
            msg = await ws.receive_json()
            if isinstance(msg, dict) and "request_id" not in msg:
                msg["request_id"] = str(uuid.uuid4())[:8]
            response = await route_request(msg, on_update=send_update)
            await ws.send_json(response)

    except WebSocketDisconnect:
        logger.info("Client disconnected")
    except Exception as e:
        logger.error(f"WebSocket fatal error: {e}")
        if ws.client_state == WebSocketState.CONNECTED:
            await ws.send_json({
                "type": "error",
                "error": {"code": "FATAL", "message": str(e)}
            })


if __name__ == "__main__":
    uvicorn.run("anchorlens.server:app", host="0.0.0.0", port=get_settings().port)
