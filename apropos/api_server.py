"""HTTP + WebSocket API for the terminal session bridge."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from apropos import __version__
from apropos.api_models import CreateSessionRequest, SessionDTO, SpawnErrorDTO, StopProjectSessionsDTO
from apropos.config import config
from apropos.core.activity_detector import ActivityDetector
from apropos.core.errors import EarlyExitError, ExecutionError, MissingDependencyError
from apropos.core.input_classifier import InputClassifier
from apropos.core.models import Session
from apropos.core.projects import ProjectDirectory
from apropos.core.session_registry import SessionRegistry, SpawnRequest
from apropos.core.terminal_bridge import AttachFactory, TerminalBridge, default_attach_factory

logger = logging.getLogger(__name__)

API_WS_PING_INTERVAL_S = 20.0
API_WS_PING_TIMEOUT_S = 20.0


def _spawn_error(status_code: int, error: SpawnErrorDTO) -> JSONResponse:
    return JSONResponse(error.model_dump(by_alias=True, exclude_none=True), status_code=status_code)


class APIServer:
    """FastAPI app exposing session lifecycle and terminal streaming."""

    def __init__(
        self,
        registry: SessionRegistry,
        projects: ProjectDirectory,
        classifier: InputClassifier,
        detector: ActivityDetector,
        attach_factory: AttachFactory = default_attach_factory,
    ) -> None:
        self.registry = registry
        self.projects = projects
        self.classifier = classifier
        self.detector = detector
        self.attach_factory = attach_factory
        self.app = FastAPI(title="Apropos API", version=__version__)
        self._bridges: set[TerminalBridge] = set()
        self._closing: set[asyncio.Task[None]] = set()
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[object] | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up all HTTP and WebSocket endpoints."""

        @self.app.get("/health")
        async def health() -> dict[str, object]:  # pyright: ignore
            """Health check endpoint."""
            return {"status": "ok", "sessions": len(self.registry.list()), "terminals": len(self._bridges)}

        @self.app.get("/api/sessions")
        async def list_sessions(refresh: bool = False) -> list[SessionDTO]:  # pyright: ignore
            """List live sessions, reconciling with tmux first when refresh is set."""
            if refresh:
                sessions = await self.registry.reconcile(self.projects)
            else:
                sessions = self.registry.list()
            return [SessionDTO.from_core(s) for s in sessions]

        @self.app.post("/api/sessions", status_code=201)
        async def create_session(request: CreateSessionRequest) -> SessionDTO:  # pyright: ignore
            """Spawn a shell or agent session in a project.

            Returns:
                The new session (201), or a structured error for missing CLIs (424),
                agents that exit during launch (502) and tmux/ssh failures (500)
            """
            project = self.projects.get(request.project_ref)
            if project is None:
                raise HTTPException(status_code=404, detail="Project not found")

            spawn_request = SpawnRequest(
                kind=request.kind,
                raw_command=request.raw_command,
                prompt=request.prompt,
                working_dir=request.working_directory_path,
                workspace_label=request.workspace_label,
                cols=request.cols,
                rows=request.rows,
            )
            try:
                session = await self.registry.spawn(project, spawn_request)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
            except MissingDependencyError as e:
                return _spawn_error(
                    424, SpawnErrorDTO(code="MISSING_CLI", message=str(e), kind=e.kind, executable=e.executable)
                )
            except EarlyExitError as e:
                return _spawn_error(
                    502, SpawnErrorDTO(code="EARLY_EXIT", message=str(e), kind=e.kind, location=e.location)
                )
            except ExecutionError as e:
                logger.error("Spawn failed for %s/%s: %s", project.id, request.kind, e)
                return _spawn_error(
                    500, SpawnErrorDTO(code="EXECUTION_FAILED", message=str(e), kind=request.kind)
                )
            return SessionDTO.from_core(session)

        @self.app.delete("/api/sessions/{session_id}")
        async def stop_session(session_id: str) -> SessionDTO:  # pyright: ignore
            """Kill a session and remove it from the registry."""
            session = await self.registry.stop(session_id)
            if session is None:
                raise HTTPException(status_code=404, detail="Session not found")
            return SessionDTO.from_core(session)

        @self.app.delete("/api/projects/{project_id}/sessions")
        async def stop_project_sessions(project_id: str) -> StopProjectSessionsDTO:  # pyright: ignore
            """Stop every session belonging to a project."""
            stopped = await self.registry.stop_project(project_id)
            return StopProjectSessionsDTO(stopped=stopped)

        @self.app.websocket("/ws/terminal")
        async def terminal_socket(  # pyright: ignore
            websocket: WebSocket,
            session_id: Optional[str] = Query(default=None, alias="sessionId"),
        ) -> None:
            await self._handle_terminal(websocket, session_id)

    async def _handle_terminal(self, websocket: WebSocket, session_id: Optional[str]) -> None:
        """Bind one WebSocket to a session through a TerminalBridge.

        Args:
            websocket: Client connection
            session_id: Registry id from the `sessionId` query parameter
        """
        await websocket.accept()
        session = self.registry.get(session_id) if session_id else None
        if session is None:
            await websocket.send_json({"type": "error", "message": "Session not found"})
            await websocket.close()
            return

        bridge = TerminalBridge(
            session,
            websocket.send_json,
            registry=self.registry,
            classifier=self.classifier,
            detector=self.detector,
            attach_factory=self.attach_factory,
        )
        self._bridges.add(bridge)
        logger.info("Terminal client connected to %s", session.id)

        receiver: asyncio.Task[None] | None = None
        closed: asyncio.Task[None] | None = None
        try:
            await bridge.start()
            receiver = asyncio.create_task(self._receive_loop(websocket, bridge))
            closed = asyncio.create_task(bridge.wait_closed())
            await asyncio.wait({receiver, closed}, return_when=asyncio.FIRST_COMPLETED)
        except WebSocketDisconnect:
            logger.info("Terminal client for %s disconnected during setup", session.id)
        except Exception as e:
            logger.error("Terminal error for %s: %s", session.id, e, exc_info=True)
        finally:
            for task in (receiver, closed):
                if task and not task.done():
                    task.cancel()
            await bridge.close()
            self._bridges.discard(bridge)
            try:
                await websocket.close()
            except RuntimeError:
                # Already closed by the client
                pass
            logger.info("Terminal client for %s closed", session.id)

    def close_session_bridges(self, session: Session) -> None:
        """Close every terminal still bound to a session that left the registry."""
        for bridge in [b for b in self._bridges if b.session.id == session.id and not b.closed]:
            logger.info("Closing terminal for removed session %s", session.id)
            task = asyncio.create_task(bridge.close(), name=f"bridge-close:{session.id}")
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    @staticmethod
    async def _receive_loop(websocket: WebSocket, bridge: TerminalBridge) -> None:
        try:
            while not bridge.closed:
                raw = await websocket.receive_text()
                await bridge.handle_message(raw)
        except WebSocketDisconnect:
            logger.debug("Client for %s disconnected", bridge.session.id)

    async def start(self, host: str | None = None, port: int | None = None) -> None:
        """Start uvicorn in a background task and wait until it is listening."""
        if self.server_task and not self.server_task.done():
            logger.warning("API server already running; skipping start")
            return

        bind_host = host or config.server.host
        bind_port = port or config.server.port
        uv_config = uvicorn.Config(
            self.app,
            host=bind_host,
            port=bind_port,
            log_level="warning",
            ws_ping_interval=API_WS_PING_INTERVAL_S,
            ws_ping_timeout=API_WS_PING_TIMEOUT_S,
        )
        self.server = uvicorn.Server(uv_config)
        server = self.server
        # Run without uvicorn's signal handling so the daemon stays in control
        self.server_task = asyncio.create_task(server._serve() if hasattr(server, "_serve") else server.serve())

        for _ in range(50):
            if server.started:
                break
            if self.server_task.done():
                raise RuntimeError("API server exited during startup") from self.server_task.exception()
            await asyncio.sleep(0.1)
        if not server.started:
            raise TimeoutError("API server failed to start within timeout")
        logger.info("API server listening on %s:%d", bind_host, bind_port)

    async def stop(self) -> None:
        """Close terminal bridges and stop uvicorn."""
        logger.info("API server stopping")
        for bridge in list(self._bridges):
            await bridge.close()
        self._bridges.clear()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

        if self.server:
            self.server.should_exit = True
        if self.server_task:
            try:
                await asyncio.wait_for(self.server_task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("API server did not stop within timeout; cancelling")
                self.server_task.cancel()
        logger.info("API server stopped")
