import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import require_api_token, token_matches
from .commands import CommandGateway
from .db import Store
from .devices import resolve_actuator
from .errors import StoreUnavailable, TransportUnavailable, ValidationError
from .history import HistoryService
from .mqtt_handler import MqttBridge, probe_broker
from .readings import as_utc, parse_query_time, parse_search_value, utcnow
from .schemas import (
    CommandOut, CommandRequest, CommandResponse, RainThresholdRequest,
    TelemetryIngest, TelemetryOut, TelemetryStats,
)
from .settings import Settings, settings as default_settings
from .ws_manager import ConnectionManager

log = logging.getLogger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    state.manager.bind_loop(asyncio.get_running_loop())
    state.store.init_db()
    if state.start_bridge:
        state.bridge.start()
    try:
        yield
    finally:
        if state.start_bridge:
            state.bridge.stop()
        state.manager.bind_loop(None)
        state.store.dispose()


def get_history(request: Request) -> HistoryService:
    return request.app.state.history


def get_bridge(request: Request) -> MqttBridge:
    return request.app.state.bridge


def get_gateway(request: Request) -> CommandGateway:
    return request.app.state.gateway


def create_app(settings: Settings | None = None, mqtt_client=None) -> FastAPI:
    """Build the app and the resources it owns.

    Pass `mqtt_client` to drive the bridge with an already-built (or fake)
    client; the bridge is then attached to it but never started.
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title="Sensorhub API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = Store.from_settings(settings)
    manager = ConnectionManager(queue_size=settings.ws_queue_size)
    bridge = MqttBridge(store, manager, settings)
    if mqtt_client is not None:
        bridge.attach(mqtt_client)

    app.state.settings = settings
    app.state.store = store
    app.state.manager = manager
    app.state.bridge = bridge
    app.state.gateway = CommandGateway(bridge)
    app.state.history = HistoryService(store, settings.query_default_limit, settings.query_max_limit)
    app.state.start_bridge = mqtt_client is None and settings.mqtt_enabled

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(TransportUnavailable)
    async def _transport_unavailable(request: Request, exc: TransportUnavailable):
        log.warning("transport unavailable for %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "MQTT not available", "error": str(exc), "retryable": True},
        )

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"detail": "Database not available", "retryable": True})

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    guarded = [Depends(require_api_token)]

    # ---------------- health ----------------

    @app.get("/api/health")
    def health():
        return {"ok": True, "time": as_utc(utcnow()).isoformat()}

    @app.get("/api/db/health")
    def db_health(request: Request):
        return {"ok": request.app.state.store.ping()}

    @app.get("/api/mqtt/health")
    def mqtt_health(request: Request, bridge: MqttBridge = Depends(get_bridge)):
        s = request.app.state.settings
        connected = bridge.connected or probe_broker(s, s.mqtt_health_timeout)
        body = {
            "connected": connected,
            "bridgeConnected": bridge.connected,
            "url": f"mqtt://{s.mqtt_host}:{s.mqtt_port}",
            "stats": dict(bridge.stats),
        }
        return JSONResponse(status_code=200 if connected else 503, content=body)

    # ---------------- commands ----------------

    @app.post("/api/control", response_model=CommandResponse, dependencies=guarded)
    def post_command(cmd: CommandRequest, gateway: CommandGateway = Depends(get_gateway)):
        result = gateway.issue(cmd.device, cmd.status)
        return CommandResponse(success=True, **vars(result))

    @app.get("/api/control", response_model=List[CommandOut], dependencies=guarded)
    def list_commands(
        device: str | None = None,
        status: str | None = None,
        since: str | None = None,
        until: str | None = None,
        sortField: str | None = None,
        sortOrder: str | None = None,
        limit: int | None = None,
        history: HistoryService = Depends(get_history),
    ):
        if device:
            device = resolve_actuator(device).name
        rows = history.list_commands(
            device=device, status=status,
            since=parse_query_time(since, "since"), until=parse_query_time(until, "until"),
            sort_field=sortField, sort_order=sortOrder, limit=limit,
        )
        return [CommandOut.from_row(r) for r in rows]

    @app.get("/api/control/status/{device}", response_model=CommandOut, dependencies=guarded)
    def command_status(device: str, history: HistoryService = Depends(get_history)):
        row = history.latest_command(resolve_actuator(device).name)
        if row is None:
            raise HTTPException(status_code=404, detail="No commands found for device")
        return CommandOut.from_row(row)

    @app.get("/api/device-states", dependencies=guarded)
    def device_states(device: str | None = None, history: HistoryService = Depends(get_history)):
        name = resolve_actuator(device).name if device else None
        return history.device_states(name)

    @app.post("/api/config/rain-threshold", dependencies=guarded)
    def rain_threshold(body: RainThresholdRequest, gateway: CommandGateway = Depends(get_gateway)):
        topic = gateway.set_rain_threshold(body.threshold)
        return {"success": True, "topic": topic, "threshold": body.threshold}

    # ---------------- telemetry ----------------

    @app.post("/api/telemetry", dependencies=guarded)
    def ingest_telemetry(body: TelemetryIngest, bridge: MqttBridge = Depends(get_bridge)):
        payload = dict(body.data)
        payload["deviceId"] = body.deviceId
        if body.timestamp is not None:
            payload["timestamp"] = body.timestamp
        row = bridge.ingest(payload)
        return {"success": True, "id": row.id}

    @app.get("/api/telemetry", response_model=List[TelemetryOut], dependencies=guarded)
    def get_telemetry(
        deviceId: str | None = None,
        since: str | None = None,
        until: str | None = None,
        sortField: str | None = None,
        sortOrder: str | None = None,
        limit: int | None = None,
        history: HistoryService = Depends(get_history),
    ):
        rows = history.list_telemetry(
            device_id=deviceId,
            since=parse_query_time(since, "since"), until=parse_query_time(until, "until"),
            sort_field=sortField, sort_order=sortOrder, limit=limit,
        )
        return [TelemetryOut.from_row(r) for r in rows]

    @app.get("/api/telemetry/latest", response_model=TelemetryOut, dependencies=guarded)
    def latest_telemetry(deviceId: str | None = None, history: HistoryService = Depends(get_history)):
        if not deviceId:
            raise ValidationError("deviceId is required")
        row = history.latest_telemetry(deviceId)
        if row is None:
            raise HTTPException(status_code=404, detail="No telemetry data found for device")
        return TelemetryOut.from_row(row)

    @app.get("/api/telemetry/stats", response_model=TelemetryStats, dependencies=guarded)
    def telemetry_stats(
        deviceId: str | None = None,
        hours: float = 24,
        history: HistoryService = Depends(get_history),
    ):
        return history.telemetry_stats(deviceId, hours)

    @app.get("/api/telemetry/search", response_model=List[TelemetryOut], dependencies=guarded)
    def search_telemetry(
        field: str = "temperature",
        value: str | None = None,
        deviceId: str | None = None,
        limit: int | None = None,
        history: HistoryService = Depends(get_history),
    ):
        if field.strip().lower() == "any":
            rows = history.search_any(parse_search_value(value), deviceId, limit)
        else:
            rows = history.search_field(field, parse_search_value(value), deviceId, limit)
        return [TelemetryOut.from_row(r) for r in rows]

    @app.get("/api/telemetry/search-any", response_model=List[TelemetryOut], dependencies=guarded)
    def search_any(
        value: str | None = None,
        deviceId: str | None = None,
        limit: int | None = None,
        history: HistoryService = Depends(get_history),
    ):
        rows = history.search_any(parse_search_value(value), deviceId, limit)
        return [TelemetryOut.from_row(r) for r in rows]

    # ---------------- live ----------------

    @app.websocket("/ws/telemetry")
    async def telemetry_ws(websocket: WebSocket):
        expected = websocket.app.state.settings.expected_token
        if not token_matches(expected, websocket.query_params.get("token")):
            await websocket.close(code=1008)
            return
        await websocket.app.state.manager.stream(websocket)


app = create_app()
