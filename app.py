import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse, HTMLResponse

from chatui.chat import ChatBusyError, ChatController
from chatui.config import DEVICE, LOG_LEVEL, MODEL_ID, PORT, RELOAD, current_favicon_path
from chatui.model_runtime import is_pipeline_loaded
from chatui.schemas import ChatRequest, ChatState
from chatui.ui import render_ui_html

logger = logging.getLogger("chatui.app")


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(controller: Optional[ChatController] = None) -> FastAPI:
    chat = controller or ChatController()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        chat.start()
        logger.info("Chat worker supervisor started for %s on %s", MODEL_ID, DEVICE)
        try:
            yield
        finally:
            chat.shutdown()

    app = FastAPI(title="Chat UI", version="1.0.0", lifespan=lifespan)
    app.state.chat = chat

    @app.get("/", response_class=HTMLResponse)
    def ui():
        state = chat.snapshot()
        html = render_ui_html({"model_id": MODEL_ID, "model_loaded_before": state.model_loaded_before})
        return HTMLResponse(
            html,
            headers={
                "Cache-Control": "no-store, no-cache, must-revalidate",
                "Pragma": "no-cache",
                "Expires": "0",
            },
        )

    @app.get("/favicon.ico", include_in_schema=False)
    def favicon():
        favicon_path = current_favicon_path()
        if favicon_path and favicon_path.exists():
            return FileResponse(favicon_path, headers={"Cache-Control": "no-cache"})
        raise HTTPException(status_code=404, detail="favicon not found")

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "model_id": MODEL_ID,
            "device": DEVICE,
            "worker_state": chat.supervisor.state.value,
            "model_loaded": is_pipeline_loaded(),
        }

    @app.get("/state", response_model=ChatState)
    def state():
        return chat.snapshot()

    @app.post("/chat", response_model=ChatState)
    def send_chat(request: ChatRequest):
        try:
            chat.send(request.text)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ChatBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return chat.snapshot()

    @app.post("/conversation/clear", response_model=ChatState)
    def clear_conversation():
        chat.clear_conversation()
        return chat.snapshot()

    @app.post("/worker/restart", response_model=ChatState)
    def restart_worker():
        try:
            chat.restart_worker()
        except Exception as exc:
            raise HTTPException(status_code=503, detail=f"Worker restart failed: {exc}") from exc
        return chat.snapshot()

    return app


app = create_app()


def main():
    configure_logging()
    uvicorn.run("app:app", host="0.0.0.0", port=PORT, reload=RELOAD)


if __name__ == "__main__":
    main()
