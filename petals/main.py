from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from .config import settings
from .errors import PetalsError
from .protocol import ChatRequest, ErrorMsg
from .service import ChatService
from .tools.registry import Permission, ToolFilter


def create_app(service: Optional[ChatService] = None) -> FastAPI:
    svc = service or ChatService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await svc.start()
        yield
        await svc.close()

    app = FastAPI(title="Petals", lifespan=lifespan)
    app.state.service = svc

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/tools")
    async def list_tools(domain: Optional[str] = None, keyword: Optional[str] = None,
                         max_permission: Optional[str] = None):
        try:
            ceiling = Permission.parse(max_permission) if max_permission else None
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        tools = await svc.registry.get_tools(ToolFilter(domain=domain, keyword=keyword, max_permission=ceiling))
        return [t.describe() for t in tools]

    @app.post("/chat")
    async def chat(req: ChatRequest):
        if not req.message.strip():
            raise HTTPException(status_code=400, detail="message required")
        try:
            backend = svc.backend(req.backend)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        conv = svc.conversation(req.conversation_id)
        if any(m.pending for m in conv.messages):
            raise HTTPException(status_code=409, detail="a turn is already in progress for this conversation")

        async def body():
            try:
                async for chunk in conv.send(req.message, backend):
                    yield chunk.model_dump_json() + "\n"
            except PetalsError as e:
                yield ErrorMsg(type="error", message=str(e)).model_dump_json() + "\n"

        return StreamingResponse(body(), media_type="application/x-ndjson")

    @app.get("/conversations/{conversation_id}/metrics")
    async def conversation_metrics(conversation_id: str):
        conv = svc.find_conversation(conversation_id)
        if conv is None or conv.last_turn is None:
            raise HTTPException(status_code=404, detail="No turn recorded for this conversation")
        return conv.last_turn.metrics()

    @app.delete("/conversations/{conversation_id}")
    async def reset_conversation(conversation_id: str):
        if not svc.reset_conversation(conversation_id):
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"ok": True}

    return app
