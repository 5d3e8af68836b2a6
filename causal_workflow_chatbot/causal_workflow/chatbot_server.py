"""
Causal Workflow Chatbot Server
FastAPI backend for a staged causal inference workflow

================================================================================
ARCHITECTURE OVERVIEW
================================================================================

    ┌─────────────┐   message    ┌──────────────┐  intent + plan  ┌──────────────┐
    │   Chat UI   │ ───────────> │    Router    │ <────────────── │   Planner    │
    │  (browser)  │ <─────────── │ (per-session │                 │ (LLM, keyword│
    └─────────────┘   messages   │    lock)     │                 │   fallback)  │
                                 └──────┬───────┘                 └──────────────┘
                                        │ prerequisites met
                                        ▼
          Formulation → EDA → DAG → Identification → Estimation  (stage agents)
                                        │
                                        ▼
                          shared context (copy-on-write merge)

Generated analysis code runs locally in a subprocess against the uploaded CSV.
================================================================================
"""

import json
import uuid
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse

from .config import APP_DIR
from .datasets import store_upload
from .display import CollectingSink, WebSocketSink
from .models import ChatRequest, RestartRequest
from .runtime_context import router, sessions

app = FastAPI(title="Causal Workflow Chatbot")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _valid_session_id(session_id: Optional[str]) -> Optional[str]:
    if not session_id or session_id in ("null", "undefined"):
        return None
    return session_id


@app.get("/")
async def get_ui():
    """Serve the chat UI"""
    html_path = APP_DIR / "chatbot_ui.html"
    if html_path.exists():
        return FileResponse(html_path)
    return HTMLResponse("""
    <html>
        <head><title>Causal Workflow Chatbot</title></head>
        <body>
            <h1>Causal Workflow Chatbot</h1>
            <p>POST to /api/chat or connect to /ws to start a conversation.</p>
        </body>
    </html>
    """)


@app.post("/api/chat")
async def chat_endpoint(request: ChatRequest):
    """Run one conversational turn and return every message it produced."""
    session_id = _valid_session_id(request.session_id) or str(uuid.uuid4())
    print(f"[DEBUG] Chat endpoint called for session {session_id}: {request.message[:100]}")

    sink = CollectingSink()
    session = await router.process_message(session_id, request.message, sink)
    return {
        "session_id": session.session_id,
        "messages": sink.dump(),
        "current_stage": session.current_stage.value,
    }


@app.post("/api/upload_data")
async def upload_data(
    file: UploadFile = File(...),
    session_id: Optional[str] = Form(None),
):
    """Store an uploaded CSV and attach it to the session's shared context."""
    session_id = _valid_session_id(session_id) or str(uuid.uuid4())
    content = await file.read()
    try:
        file_path = store_upload(session_id, file.filename, content)
        info = await router.attach_dataset(session_id, str(file_path))
    except (ValueError, FileNotFoundError) as e:
        print(f"[ERROR] Upload failed: {e}")
        return {"status": "error", "error": str(e)}

    print(f"[DEBUG] Data uploaded for session {session_id}: {info.rows} rows, columns={info.columns}")
    return {
        "status": "uploaded",
        "session_id": session_id,
        "file_path": str(file_path),
        "data_info": info.model_dump(mode="json"),
    }


@app.get("/api/session")
async def get_session(session_id: str):
    """Debug view of a session's state"""
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return {
        "session_id": session.session_id,
        "created_at": session.created_at,
        "current_stage": session.current_stage.value,
        "shared_context": session.shared_context.model_dump(mode="json"),
        "stages": {
            stage.value: {"status": state.status, "attempts": state.attempts}
            for stage, state in session.stages.items()
        },
        "history_length": len(session.conversation_history),
    }


@app.post("/api/restart")
async def restart_session(request: RestartRequest):
    async with sessions.lock_for(request.session_id):
        session = await sessions.restart(request.session_id)
    return {"session_id": session.session_id, "current_stage": session.current_stage.value}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time chat"""
    await websocket.accept()
    session_id = None

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError as e:
                print(f"[ERROR] WebSocket JSON decode error: {e}")
                await websocket.send_json({
                    "type": "error",
                    "content": "Invalid JSON format. Please check your message.",
                })
                continue

            if data.get("type") == "init":
                session_id = _valid_session_id(data.get("session_id")) or str(uuid.uuid4())
                sessions.get_or_create(session_id)
                print(f"[DEBUG] WebSocket init: session {session_id}")
                await websocket.send_json({
                    "type": "init",
                    "session_id": session_id,
                    "message": "Connected. Ask a causal question to begin.",
                })
            elif data.get("type") == "message":
                session_id = _valid_session_id(data.get("session_id")) or session_id or str(uuid.uuid4())
                user_message = data.get("message") or ""
                if not user_message.strip():
                    await websocket.send_json({"type": "error", "content": "Empty message."})
                    continue
                session = await router.process_message(session_id, user_message, WebSocketSink(websocket, session_id))
                await websocket.send_json({
                    "type": "turn_complete",
                    "session_id": session_id,
                    "current_stage": session.current_stage.value,
                })
            else:
                await websocket.send_json({
                    "type": "error",
                    "content": f"Unknown frame type: {data.get('type')}",
                })
    except WebSocketDisconnect:
        print(f"[INFO] WebSocket disconnected for session {session_id}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
