from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from .auth import auth_required
from .schemas import ConversationOut, DirectConversationIn, MessageCreateIn, MessageOut
from .store import PersistenceError

router = APIRouter()


def _store(request: Request):
    return request.app.state.store


@router.get("/messages/history", response_model=List[MessageOut])
async def history(peer: str, request: Request, me: str = Depends(auth_required)):
    store = _store(request)
    try:
        sent = await store.select("messages", {"sender_id": me, "receiver_id": peer})
        received = await store.select("messages", {"sender_id": peer, "receiver_id": me})
    except PersistenceError as e:
        raise HTTPException(500, f"could not load history: {e}")
    return sorted(sent + received, key=lambda m: m["created_at"])


@router.post("/messages", response_model=MessageOut, status_code=201)
async def send_message(body: MessageCreateIn, request: Request, me: str = Depends(auth_required)):
    try:
        return await request.app.state.chat.send(
            None, me, body.receiver_id, body.content, body.conversation_id
        )
    except PersistenceError as e:
        raise HTTPException(500, f"could not send message: {e}")


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageOut])
async def conversation_messages(
    conversation_id: str, request: Request, me: str = Depends(auth_required)
):
    try:
        return await _store(request).select(
            "messages", {"conversation_id": conversation_id}, order_by="created_at"
        )
    except PersistenceError as e:
        raise HTTPException(500, f"could not load messages: {e}")


@router.get("/conversations", response_model=List[ConversationOut])
async def list_conversations(request: Request, me: str = Depends(auth_required)):
    store = _store(request)
    out = []
    try:
        memberships = await store.select(
            "conversation_members", {"user_id": me}, order_by="joined_at"
        )
        for m in memberships:
            conv = await store.select_one("conversations", {"id": m["conversation_id"]})
            if conv:
                out.append({**conv, "role": m["role"]})
    except PersistenceError as e:
        raise HTTPException(500, f"could not load conversations: {e}")
    return out


@router.post("/conversations", response_model=ConversationOut)
async def open_conversation(
    body: DirectConversationIn, request: Request, me: str = Depends(auth_required)
):
    try:
        return await request.app.state.chat.open_direct(me, body.user_id)
    except PersistenceError as e:
        raise HTTPException(500, f"could not open conversation: {e}")


@router.put("/messages/{message_id}/read")
async def mark_read(message_id: str, request: Request, me: str = Depends(auth_required)):
    await request.app.state.chat.mark_read(message_id, me)
    return {"ok": True}


@router.get("/files/{file_id}")
async def download_file(file_id: str, request: Request, me: str = Depends(auth_required)):
    files = request.app.state.files
    if not hasattr(files, "open"):
        raise HTTPException(404, "file not found")
    found = await files.open(file_id)
    if not found:
        raise HTTPException(404, "file not found")
    data, mime_type, file_name = found
    return Response(
        content=data,
        media_type=mime_type,
        headers={"Content-Disposition": f'inline; filename="{file_name}"'},
    )
