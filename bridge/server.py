"""
FastAPI websocket server for simulator-Python communication bridge.
Receives telemetry events and replies with steer commands.

Frames use the simulator's socket.io text framing: a "42" prefix followed by
a JSON array ["event", {payload}].
"""

import asyncio
import json
import time
import logging
import threading
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
import uvicorn

from data.formats.data_format import Telemetry

# Log slow cycles to identify simulator<->Python stalls.
SLOW_CYCLE_SECONDS = 0.2

MANUAL_REPLY = '42["manual",{}]'


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "mpc_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("mpc_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()


class TelemetryMessage(BaseModel):
    """Telemetry payload from the simulator."""
    ptsx: List[float]
    ptsy: List[float]
    x: float
    y: float
    psi: float
    speed: float
    steering_angle: float
    throttle: float


def extract_event_payload(message: str) -> str:
    """
    Pull the JSON event array out of a socket.io frame.

    Returns "" when the frame carries no data (a null payload or no array).
    """
    if "null" in message:
        return ""
    start = message.find("[")
    end = message.rfind("}]")
    if start != -1 and end != -1:
        return message[start:end + 2]
    return ""


def encode_event(event: str, payload: dict) -> str:
    return "42" + json.dumps([event, payload], separators=(",", ":"))


def create_app(stack, actuation_delay: float = 0.1) -> FastAPI:
    """
    Build the bridge application around a stack.

    Args:
        stack: Object with process_telemetry(Telemetry) -> SteerCommand
        actuation_delay: Seconds to wait before replying, mimicking actuator lag
    """
    app = FastAPI(title="MPC Stack Bridge Server")
    # One solve at a time; the controller has no internal locking. Taken in
    # the worker thread so it is not tied to any particular event loop.
    solve_lock = threading.Lock()
    stats = {"connections": 0, "telemetry_count": 0, "fallback_count": 0}

    def process_serialized(telemetry: Telemetry):
        with solve_lock:
            return stack.process_telemetry(telemetry)

    async def handle_message(message: str) -> Optional[str]:
        """Return the reply frame for one incoming frame, or None for no reply."""
        if len(message) <= 2 or not message.startswith("42"):
            return None

        payload = extract_event_payload(message)
        if not payload:
            return MANUAL_REPLY

        try:
            event, data = json.loads(payload)
        except (ValueError, TypeError) as e:
            logger.warning("[BAD_FRAME] could not decode event: %s", e)
            return MANUAL_REPLY

        if event != "telemetry":
            return None

        try:
            telemetry_msg = TelemetryMessage.model_validate(data)
        except ValidationError as e:
            logger.warning("[BAD_TELEMETRY] %d validation errors", len(e.errors()))
            return MANUAL_REPLY

        telemetry = Telemetry.from_message(telemetry_msg.model_dump())
        start_time = time.time()
        command = await asyncio.to_thread(process_serialized, telemetry)
        duration = time.time() - start_time

        stats["telemetry_count"] += 1
        if command.fallback:
            stats["fallback_count"] += 1
        if duration > SLOW_CYCLE_SECONDS:
            logger.warning("[SLOW] telemetry cycle duration=%.3fs", duration)

        if actuation_delay > 0.0:
            await asyncio.sleep(actuation_delay)
        return encode_event("steer", command.to_message())

    async def serve(websocket: WebSocket) -> None:
        await websocket.accept()
        stats["connections"] += 1
        logger.info("Connected")
        try:
            while True:
                message = await websocket.receive_text()
                reply = await handle_message(message)
                if reply is not None:
                    await websocket.send_text(reply)
        except WebSocketDisconnect:
            logger.info("Disconnected")

    app.add_api_websocket_route("/", serve)
    app.add_api_websocket_route("/socket.io/", serve)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "connections": stats["connections"],
            "telemetry_count": stats["telemetry_count"],
            "fallback_count": stats["fallback_count"],
        }

    return app


def run_server(stack, host: str = "0.0.0.0", port: int = 4567, actuation_delay: float = 0.1):
    """Run the bridge server."""
    print(f"Starting MPC Stack Bridge Server on {host}:{port}")
    print("Endpoints:")
    print("  WS   / and /socket.io/ - telemetry in, steer out")
    print("  GET  /api/health - Health check")

    uvicorn.run(create_app(stack, actuation_delay=actuation_delay), host=host, port=port)
