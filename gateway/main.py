from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from common.config import GatewaySettings, LLMSettings, SpeechSettings
from common.schemas import ErrorMessage
from gateway.session import SessionController, SessionManager
from llm_service.openai_client import ChatCompletionClient
from stt_service.provider import build_speech_provider

logger = logging.getLogger(__name__)

settings = GatewaySettings()
speech_settings = SpeechSettings()
llm_settings = LLMSettings()
app = FastAPI(title="Live Insights Gateway")
manager = SessionManager(max_sessions=settings.max_sessions)
# Shared, stateless provider clients; populated at startup.
providers: dict[str, object] = {}


@app.on_event("startup")
async def startup():
    # Missing credentials raise ConfigurationError here and abort startup.
    if "speech" not in providers:
        providers["speech"] = build_speech_provider(speech_settings)
    if "completion" not in providers:
        providers["completion"] = ChatCompletionClient(llm_settings)


@app.on_event("shutdown")
async def shutdown():
    speech = providers.get("speech")
    if speech is not None:
        await speech.close()


@app.get("/health")
async def health():
    return {"status": "ok", "active_sessions": manager.active_count}


@app.websocket("/")
@app.websocket("/ws")
async def audio_endpoint(ws: WebSocket):
    await ws.accept()
    controller = SessionController(
        connection_id=uuid.uuid4().hex[:12],
        send_text=ws.send_text,
        speech_provider=providers["speech"],
        completion_client=providers["completion"],
        gateway_settings=settings,
        speech_settings=speech_settings,
        llm_settings=llm_settings,
    )
    try:
        await manager.add(controller)
    except RuntimeError as exc:
        logger.warning("Rejecting connection: %s", exc)
        await ws.send_text(ErrorMessage(message=str(exc)).to_json())
        await ws.close()
        return

    # Feed audio to the speech session in background; control messages are handled inline
    feeder_task = asyncio.create_task(controller.feed_audio())
    try:
        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                controller.enqueue_audio(message["bytes"])
            elif message.get("text") is not None:
                await controller.handle_text(message["text"])
    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", controller.connection_id)
    except Exception:
        logger.exception("Unexpected error in audio endpoint")
    finally:
        feeder_task.cancel()
        try:
            await feeder_task
        except asyncio.CancelledError:
            pass
        await controller.close()
        await manager.remove(controller.connection_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)
