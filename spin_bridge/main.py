import asyncio
import uuid

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.openapi.docs import get_swagger_ui_html

from spin_bridge.bridge import GameBridge
from spin_bridge.clients.chain_client import ChainAdapter, HttpChainAdapter
from spin_bridge.clients.memory_chain import InMemoryChainAdapter
from spin_bridge.config import settings
from spin_bridge.engine import SpinEngine
from spin_bridge.logging_config import get_logger
from spin_bridge.security import require_bearer_token, websocket_authorized
from spin_bridge.transport import ChannelTransport


logger = get_logger(__name__)

app = FastAPI(title="Spin Bridge Host")
app.state.sessions = {}


def build_adapter(contract_id: str) -> ChainAdapter:
    if settings.chain_mode == "memory":
        return InMemoryChainAdapter(
            contract_id,
            balances={settings.wallet_address: settings.sandbox_starting_balance},
            bonus_spins={settings.wallet_address: settings.sandbox_bonus_spins},
            auto_confirm=True,
        )
    return HttpChainAdapter(contract_id, settings)


@app.websocket("/ws/{contract_id}")
async def game_channel(websocket: WebSocket, contract_id: str):
    if not websocket_authorized(websocket):
        logger.warning("Rejected game channel: contract_id=%s reason=unauthorized", contract_id)
        await websocket.close(code=1008)
        return
    await websocket.accept()
    session_id = websocket.query_params.get("session") or str(uuid.uuid4())
    engine = SpinEngine(build_adapter(contract_id), settings.wallet_address, settings)
    exit_requested = asyncio.Event()
    bridge = GameBridge(engine, ChannelTransport(websocket.send_json), on_exit=exit_requested.set)
    app.state.sessions[session_id] = bridge
    bridge.start()
    logger.info("Game channel opened: session_id=%s contract_id=%s", session_id, contract_id)
    try:
        while not exit_requested.is_set():
            raw = await websocket.receive_text()
            await bridge.handle_raw(raw)
        await bridge.drain()
        await websocket.close()
    except WebSocketDisconnect:
        logger.info("Game channel disconnected: session_id=%s", session_id)
    finally:
        app.state.sessions.pop(session_id, None)
        await bridge.destroy()
        await engine.destroy()
        logger.info("Game session closed: session_id=%s pending=%s", session_id, engine.pending_count())


@app.get("/sessions")
async def list_sessions(_auth=Depends(require_bearer_token)):
    return [
        {
            "sessionId": session_id,
            "contractId": bridge.engine.config.contractId if bridge.engine.config else None,
            "pendingCount": bridge.engine.pending_count(),
            "balance": bridge.engine.get_balance(),
        }
        for session_id, bridge in app.state.sessions.items()
    ]


@app.get("/sessions/{session_id}/queue")
async def session_queue(session_id: str, _auth=Depends(require_bearer_token)):
    """
    Authoritative queue snapshot for one live game session.
    """
    bridge = app.state.sessions.get(session_id)
    if bridge is None:
        raise HTTPException(status_code=404, detail="unknown session")
    return bridge.queue_payload().model_dump(mode="json")


@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="Spin Bridge Host - Swagger UI")

@app.get("/health")
async def health():
    return {"status": "ok", "sessions": len(app.state.sessions)}
