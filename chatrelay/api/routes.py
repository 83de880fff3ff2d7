from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Response
from fastapi.responses import StreamingResponse

from chatrelay.api.schemas import ChatRequest, Envelope, StopResponse
from chatrelay.logging import bind_conversation, get_logger
from chatrelay.service import chat as chat_service
from chatrelay.service.runtime import get_runtime
from chatrelay.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> User:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.get_user_by_token, token.strip())
    if user is None or not user.is_active:
        raise _http_error("unauthorized", "invalid token", status_code=401)
    return user


@router.post(
    "/chat",
    response_class=StreamingResponse,
    responses={200: {"content": {"text/event-stream": {}}}},
)
async def chat(body: ChatRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    session = await runtime.chat.handle(
        chat_service.ChatRequest(
            chat_id=body.chat_id,
            messages=[m.model_dump(exclude_none=True) for m in body.messages],
            mode=body.mode,
            todos=[t.model_dump() for t in body.todos],
            regenerate=body.regenerate,
            temporary=body.temporary,
        ),
        user,
    )
    headers = {**SSE_HEADERS, "X-Stream-ID": session.stream_id}
    return StreamingResponse(session.frames(), media_type="text/event-stream", headers=headers)


@router.post("/chat/{chat_id}/stop", response_model=Envelope)
async def stop_chat(
    chat_id: str = Path(..., max_length=128),
    user: User = Depends(get_user),
):
    bind_conversation(chat_id)
    runtime = get_runtime()
    await runtime.chat.stop(chat_id, user)
    return Envelope(status="ok", data=StopResponse(chat_id=chat_id, canceled=True).model_dump())


@router.get("/chat/{chat_id}/stream")
async def resume_chat_stream(
    chat_id: str = Path(..., max_length=128),
    user: User = Depends(get_user),
):
    bind_conversation(chat_id)
    runtime = get_runtime()
    frames = await runtime.chat.resume(chat_id, user)
    if frames is None:
        return Response(status_code=204)
    logger.info("stream_resumed", conversation_id=chat_id)
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)
