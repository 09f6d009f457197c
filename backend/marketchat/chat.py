"""Chat core: message routing, typing, read receipts, groups and file relay.

Persistence always happens before any delivery. Deliveries are best effort;
a user without a live connection picks the record up from history later.
"""
import logging
from typing import List, Optional

from .auth import AuthError, check_login
from .models import utcnow
from .schemas import (
    ERROR,
    FILE_UPLOAD_ERROR,
    GROUP_CREATE_ERROR,
    GROUP_CREATED,
    GROUP_INVITED,
    LOGIN_ERROR,
    MESSAGE_ERROR,
    MESSAGE_READ,
    MESSAGE_RECEIVE,
    MESSAGE_SENT,
    TYPING_INDICATOR,
    TYPING_STOPPED,
    FileUploadEvent,
    GroupCreateEvent,
    LoginEvent,
    MessageReadEvent,
    MessageSendEvent,
    TypingEvent,
    error_frame,
    frame,
)
from .storage import StorageError, decode_file_payload
from .store import PersistenceError

logger = logging.getLogger(__name__)

FILE_PLACEHOLDER = "\U0001F4CE {}"


class ChatService:
    def __init__(self, store, registry, delivery, files, settings):
        self.store = store
        self.registry = registry
        self.delivery = delivery
        self.files = files
        self.settings = settings

    # --- connection lifecycle ---

    async def login(self, conn, user_id: str, token: Optional[str] = None) -> bool:
        try:
            check_login(
                user_id, token, self.settings.jwt_secret, self.settings.ws_auth_required
            )
        except AuthError as e:
            logger.warning("login refused for %s: %s", user_id, e)
            await self.delivery.reply(conn, error_frame(LOGIN_ERROR, str(e)))
            return False
        await self.registry.register(user_id, conn)
        return True

    async def logout(self, conn):
        await self.registry.unregister(conn)

    # --- messages ---

    async def _push_message(self, conn, message: dict):
        if conn is not None:
            await self.delivery.reply(conn, frame(MESSAGE_SENT, message))
        if message.get("receiver_id"):
            await self.delivery.deliver(message["receiver_id"], frame(MESSAGE_RECEIVE, message))

    async def send(
        self,
        conn,
        sender_id: str,
        receiver_id: str,
        content: str,
        conversation_id: Optional[str] = None,
    ) -> Optional[dict]:
        """Persist a direct message, ack it on ``conn`` and push it to the receiver.

        With no ``conn`` (REST callers) there is no ack and persistence errors are raised.
        """
        record = {
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "conversation_id": conversation_id,
            "is_read": False,
            "read_at": None,
            "created_at": utcnow(),
        }
        try:
            message = await self.store.insert("messages", record)
        except PersistenceError as e:
            logger.error("error sending message from %s: %s", sender_id, e)
            if conn is None:
                raise
            await self.delivery.reply(conn, error_frame(MESSAGE_ERROR, str(e)))
            return None
        await self._push_message(conn, message)
        return message

    async def send_file(
        self,
        conn,
        sender_id: str,
        receiver_id: str,
        file_name: str,
        encoded_payload: str,
        mime_type: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Optional[dict]:
        try:
            data = decode_file_payload(encoded_payload)
            file_url = await self.files.save(file_name, data, mime_type)
            message = await self.store.insert(
                "messages",
                {
                    "sender_id": sender_id,
                    "receiver_id": receiver_id,
                    "content": FILE_PLACEHOLDER.format(file_name),
                    "file_url": file_url,
                    "file_type": mime_type,
                    "conversation_id": conversation_id,
                    "is_read": False,
                    "read_at": None,
                    "created_at": utcnow(),
                },
            )
        except (StorageError, PersistenceError) as e:
            logger.error("error uploading %s from %s: %s", file_name, sender_id, e)
            await self.delivery.reply(conn, error_frame(FILE_UPLOAD_ERROR, str(e)))
            return None
        await self._push_message(conn, message)
        return message

    # --- typing ---

    async def start_typing(self, sender_id: str, receiver_id: str) -> bool:
        return await self.delivery.deliver(receiver_id, frame(TYPING_INDICATOR, {"userId": sender_id}))

    async def stop_typing(self, sender_id: str, receiver_id: str) -> bool:
        return await self.delivery.deliver(receiver_id, frame(TYPING_STOPPED, {"userId": sender_id}))

    # --- read receipts ---

    async def mark_read(self, message_id: str, reader_id: str):
        """Mark a message read by its receiver and tell the sender.

        Best effort: persistence errors are logged, never surfaced to the reader.
        Only the message's receiver can flip the flag; anyone else is a no-op.
        """
        read_at = utcnow()
        try:
            await self.store.update(
                "messages",
                {"id": message_id, "receiver_id": reader_id},
                {"is_read": True, "read_at": read_at},
            )
            message = await self.store.select_one("messages", {"id": message_id})
        except PersistenceError:
            logger.exception("error marking message %s as read", message_id)
            return
        if not message or message.get("receiver_id") != reader_id:
            return
        await self.delivery.deliver(
            message["sender_id"],
            frame(MESSAGE_READ, {"messageId": message_id, "readBy": reader_id, "readAt": read_at}),
        )

    # --- groups ---

    async def create_group(
        self,
        conn,
        creator_id: str,
        name: str,
        description: Optional[str],
        member_ids: List[str],
    ) -> Optional[dict]:
        now = utcnow()
        try:
            group = await self.store.insert(
                "conversations",
                {
                    "name": name,
                    "description": description,
                    "creator_id": creator_id,
                    "is_group": True,
                    "created_at": now,
                },
            )
        except PersistenceError as e:
            logger.error("error creating group for %s: %s", creator_id, e)
            await self.delivery.reply(conn, error_frame(GROUP_CREATE_ERROR, str(e)))
            return None

        invitees = [m for m in dict.fromkeys(member_ids) if m != creator_id]
        rows = [
            {
                "conversation_id": group["id"],
                "user_id": user_id,
                "role": "admin" if user_id == creator_id else "member",
                "joined_at": now,
            }
            for user_id in [creator_id] + invitees
        ]
        try:
            await self.store.insert_many("conversation_members", rows)
        except PersistenceError as e:
            # no rollback: the conversation row stays behind without members
            logger.warning(
                "group %s created without members, needs reconciliation: %s", group["id"], e
            )
            await self.delivery.reply(conn, error_frame(GROUP_CREATE_ERROR, str(e)))
            return None

        for member_id in invitees:
            await self.delivery.deliver(
                member_id,
                frame(GROUP_INVITED, {"groupId": group["id"], "groupName": name, "invitedBy": creator_id}),
            )
        await self.delivery.reply(conn, frame(GROUP_CREATED, group))
        return group

    # --- direct conversations ---

    async def open_direct(self, user_id: str, peer_id: str) -> dict:
        """Return the 1:1 conversation between two users, creating it on first use.

        Persistence errors are raised to the caller.
        """
        key = direct_key(user_id, peer_id)
        existing = await self.store.select_one("conversations", {"direct_key": key})
        if existing:
            return existing
        now = utcnow()
        try:
            conv = await self.store.insert(
                "conversations",
                {"creator_id": user_id, "is_group": False, "direct_key": key, "created_at": now},
            )
        except PersistenceError:
            # lost a race with the peer opening the same conversation
            existing = await self.store.select_one("conversations", {"direct_key": key})
            if existing:
                return existing
            raise
        await self.store.insert_many(
            "conversation_members",
            [
                {"conversation_id": conv["id"], "user_id": u, "role": "member", "joined_at": now}
                for u in dict.fromkeys([user_id, peer_id])
            ],
        )
        return conv


def direct_key(user_id: str, peer_id: str) -> str:
    return ":".join(sorted([user_id, peer_id]))


def _acting_user(event) -> str:
    data = event.data
    if isinstance(event, MessageReadEvent):
        return data.user_id
    if isinstance(event, GroupCreateEvent):
        return data.creator_id
    return data.sender_id


async def dispatch(service: ChatService, conn, event):
    if isinstance(event, LoginEvent):
        await service.login(conn, event.data.user_id, event.data.token)
        return

    if service.settings.ws_auth_required:
        identity = service.registry.identity_of(conn)
        actor = _acting_user(event)
        if identity != actor:
            await service.delivery.reply(
                conn, error_frame(ERROR, f"connection is not logged in as {actor}")
            )
            return

    data = event.data
    if isinstance(event, MessageSendEvent):
        await service.send(conn, data.sender_id, data.receiver_id, data.content, data.conversation_id)
    elif isinstance(event, TypingEvent):
        if event.event == "typing:start":
            await service.start_typing(data.sender_id, data.receiver_id)
        else:
            await service.stop_typing(data.sender_id, data.receiver_id)
    elif isinstance(event, MessageReadEvent):
        await service.mark_read(data.message_id, data.user_id)
    elif isinstance(event, FileUploadEvent):
        await service.send_file(
            conn,
            data.sender_id,
            data.receiver_id,
            data.file_name,
            data.file_data,
            data.file_type,
            data.conversation_id,
        )
    elif isinstance(event, GroupCreateEvent):
        await service.create_group(conn, data.creator_id, data.name, data.description, data.member_ids)
    else:
        raise TypeError(f"unhandled event type {type(event).__name__}")
