"""
WebSocket front-end for the streaming chat engine.

Requests are JSON objects ``{"action", "request_id", "payload"}``; responses
are ``{"request_id", "status", "chunk"}`` with status ``chunk``, ``complete``,
``error`` or ``ok``. The shared render slot pushes ``chunk`` frames only for
the displayed session.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from websockets.asyncio.server import ServerConnection, broadcast, serve
from websockets.exceptions import ConnectionClosed

from .chat_service import ChatService
from .config import Configuration
from .history.models import Message, Session
from .history.session_manager import SessionManager
from .history.session_store import create_session_store
from .llm.client import LLMClient
from .llm.streaming.accumulator import RenderUpdate
from .logging_utils import StreamErrorHandler, configure_logging

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def session_summary(session: Session, generating: bool) -> dict[str, Any]:
    return {
        "id": session.id,
        "name": session.name,
        "pinned": session.pinned,
        "last_activity": session.last_activity,
        "generating": generating,
    }


def error_chunk(error: Exception) -> dict[str, Any]:
    return {
        "error": StreamErrorHandler.user_message(error),
        "category": StreamErrorHandler.classify_error(error),
    }


class ChatServer:
    """Routes websocket actions to the chat service."""

    def __init__(self, service: ChatService) -> None:
        self.service = service
        self.manager: SessionManager = service.manager
        self.connections: set[ServerConnection] = set()
        # session id -> request id of the chat that is streaming into it
        self._stream_requests: dict[str, str] = {}
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            "stop": self._stop,
            "switch": self._switch,
            "list_sessions": self._list_sessions,
            "new_session": self._new_session,
            "delete_session": self._delete_session,
            "rename_session": self._rename_session,
            "pin_session": self._pin_session,
            "feedback": self._feedback,
            "scan_models": self._scan_models,
        }
        service.scheduler.renderer = self.render

    # ---------- outbound ----------

    def render(self, update: RenderUpdate) -> None:
        """Renderer for the shared render slot."""
        if not self.manager.is_displayed(update.session_id):
            return
        frame = {
            "request_id": self._stream_requests.get(update.session_id),
            "status": "chunk",
            "chunk": {
                "session_id": update.session_id,
                "message_id": update.message_id,
                "content": update.content,
            },
        }
        broadcast(self.connections, json.dumps(frame, ensure_ascii=False))

    @staticmethod
    async def _send(
        websocket: ServerConnection,
        request_id: str | None,
        status: str,
        chunk: dict[str, Any],
    ) -> None:
        frame = {"request_id": request_id, "status": status, "chunk": chunk}
        with contextlib.suppress(ConnectionClosed):
            await websocket.send(json.dumps(frame, ensure_ascii=False))

    # ---------- connection ----------

    async def handler(self, websocket: ServerConnection) -> None:
        self.connections.add(websocket)
        logger.info("Client connected (%d open)", len(self.connections))
        try:
            async for raw in websocket:
                await self._handle_frame(websocket, raw)
        except ConnectionClosed:
            pass
        finally:
            self.connections.discard(websocket)
            logger.info("Client disconnected (%d open)", len(self.connections))

    async def _handle_frame(self, websocket: ServerConnection, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            await self._send(websocket, None, "error", {"error": f"Invalid JSON: {e}"})
            return
        if not isinstance(data, dict):
            await self._send(websocket, None, "error", {"error": "Expected a JSON object"})
            return

        action = data.get("action")
        request_id = data.get("request_id") or str(uuid.uuid4())
        payload = data.get("payload") or {}

        if action in ("chat", "regenerate", "edit"):
            task = asyncio.create_task(
                self._run_streaming(websocket, request_id, action, payload)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

        handler = self._handlers.get(action)
        if handler is None:
            await self._send(
                websocket, request_id, "error", {"error": f"Unknown action: {action}"}
            )
            return
        try:
            result = await handler(payload)
        except Exception as e:
            StreamErrorHandler.log_failure(e, f"ws_{action}")
            await self._send(websocket, request_id, "error", error_chunk(e))
            return
        await self._send(websocket, request_id, "ok", result)

    def _session_id(self, payload: dict[str, Any]) -> str:
        session_id = payload.get("session_id") or self.manager.current_session_id
        if not session_id:
            raise ValueError("No session selected")
        return session_id

    # ---------- streaming actions ----------

    async def _run_streaming(
        self,
        websocket: ServerConnection,
        request_id: str,
        action: str,
        payload: dict[str, Any],
    ) -> None:
        try:
            session_id = self._session_id(payload)
        except ValueError as e:
            await self._send(websocket, request_id, "error", error_chunk(e))
            return

        if not self.service.is_generating(session_id):
            self._stream_requests[session_id] = request_id
        try:
            message = await self._start(action, session_id, payload)
        except Exception as e:
            StreamErrorHandler.log_failure(e, f"ws_{action}")
            await self._send(websocket, request_id, "error", error_chunk(e))
            return
        finally:
            if self._stream_requests.get(session_id) == request_id:
                del self._stream_requests[session_id]

        status = "error" if message.is_error else "complete"
        await self._send(
            websocket,
            request_id,
            status,
            {"session_id": session_id, "message": message.model_dump(mode="json")},
        )

    async def _start(
        self, action: str, session_id: str, payload: dict[str, Any]
    ) -> Message:
        if action == "chat":
            return await self.service.send_message(
                session_id, payload.get("text", ""), payload.get("images")
            )
        if action == "regenerate":
            return await self.service.regenerate(session_id, int(payload["index"]))
        return await self.service.edit_and_resend(
            session_id, int(payload["index"]), payload.get("content", "")
        )

    # ---------- session actions ----------

    async def _stop(self, payload: dict[str, Any]) -> dict[str, Any]:
        stopped = await self.service.stop_generation(self._session_id(payload))
        return {"stopped": stopped}

    async def _switch(self, payload: dict[str, Any]) -> dict[str, Any]:
        session = self.manager.switch_session(payload["session_id"])
        await self.manager.persist()
        return {"session": session.model_dump(mode="json")}

    async def _list_sessions(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "current_session_id": self.manager.current_session_id,
            "sessions": [
                session_summary(s, self.service.is_generating(s.id))
                for s in self.manager.ordered_sessions()
            ],
        }

    async def _new_session(self, payload: dict[str, Any]) -> dict[str, Any]:
        session = self.manager.create_session()
        await self.manager.persist()
        return {"session": session.model_dump(mode="json")}

    async def _delete_session(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.manager.delete_session(payload["session_id"])
        await self.manager.persist()
        return {"current_session_id": self.manager.current_session_id}

    async def _rename_session(self, payload: dict[str, Any]) -> dict[str, Any]:
        renamed = self.manager.rename_session(payload["session_id"], payload.get("name", ""))
        if renamed:
            await self.manager.persist()
        return {"renamed": renamed}

    async def _pin_session(self, payload: dict[str, Any]) -> dict[str, Any]:
        pinned = self.manager.toggle_pin(payload["session_id"])
        await self.manager.persist()
        return {"pinned": pinned}

    async def _feedback(self, payload: dict[str, Any]) -> dict[str, Any]:
        record = self.manager.submit_feedback(
            self._session_id(payload), int(payload["index"]), payload["type"]
        )
        await self.manager.persist()
        await self.manager.persist_feedback()
        return {"feedback": record.model_dump(mode="json")}

    async def _scan_models(self, payload: dict[str, Any]) -> dict[str, Any]:
        found = await self.service.scan_models()
        settings = self.service.settings
        return {
            "found": found,
            "models": settings.custom_models,
            "model": settings.model,
        }

    async def wait_closed(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


async def run_server(
    server: ChatServer, host: str, port: int, shutdown_event: asyncio.Event
) -> None:
    async with serve(server.handler, host, port):
        logger.info("WebSocket server listening on ws://%s:%d", host, port)
        await shutdown_event.wait()


async def main() -> None:
    """Main entry point - WebSocket interface with graceful shutdown handling."""
    config = Configuration()
    configure_logging(config.get_logging_config().get("level", "INFO"))

    settings = config.get_chat_settings()
    history_config = config.get_history_config()
    ws_config = config.get_websocket_config()

    store = create_session_store(config)
    manager = SessionManager(store, private_mode=history_config.get("private_mode", False))
    await manager.load()

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        """Handle shutdown signals gracefully."""
        logger.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    async with LLMClient(settings) as client:
        service = ChatService(client, manager)
        server = ChatServer(service)
        try:
            await run_server(
                server,
                ws_config.get("host", "localhost"),
                int(ws_config.get("port", 8000)),
                shutdown_event,
            )
        except Exception as e:
            logger.error("Application error: %s", e)
            raise
        finally:
            await service.cleanup()
            await server.wait_closed()
            await manager.persist()
            await store.close()
            logger.info("Application shutdown complete")


def run() -> None:
    """Console script entry point."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    run()
