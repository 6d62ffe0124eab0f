# src/taskpulse/connectors/matrix_connector.py

"""
Matrix transport.

- MatrixNotifier posts failure notices into the owner's room (owner.channel_id).
- MatrixConnector runs the sync loop and routes `!command` messages from an
  owner's room to the command table for that owner.

Both share one nio client and run on the same event loop as the heartbeat.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from nio import AsyncClient, MatrixRoom, RoomMessageText, RoomSendError, RoomSendResponse

from ..core.owners import OwnerRegistry
from ..tasks.task_models import now_ms

logger = logging.getLogger(__name__)

# (owner_id, text) -> reply or None
MessageHandler = Callable[[str, str], Awaitable["str | None"]]


async def send_text(
    client: AsyncClient, *, room_id: str, text: str
) -> RoomSendResponse | RoomSendError:
    return await client.room_send(
        room_id=room_id,
        message_type="m.room.message",
        content={"msgtype": "m.text", "body": text},
        ignore_unverified_devices=True,
    )


class MatrixNotifier:
    def __init__(self, client: AsyncClient, owners: OwnerRegistry) -> None:
        self._client = client
        self._owners = owners

    async def notify(self, owner_id: str, message: str) -> None:
        owner = self._owners.get(owner_id)
        room_id = owner.channel_id if owner is not None else None
        if not room_id:
            logger.warning("No Matrix room for owner=%s; notification dropped: %s", owner_id, message)
            return
        resp = await send_text(self._client, room_id=room_id, text=message)
        if isinstance(resp, RoomSendError):
            logger.error(
                "Notification not delivered owner=%s room=%s: %s %s",
                owner_id,
                room_id,
                resp.status_code,
                resp.message,
            )
            return
        logger.info("Notification sent owner=%s room=%s event=%s", owner_id, room_id, resp.event_id)


class MatrixConnector:
    def __init__(
        self,
        client: AsyncClient,
        owners: OwnerRegistry,
        on_message: MessageHandler,
        *,
        sync_timeout_ms: int = 30000,
    ) -> None:
        self._client = client
        self._owners = owners
        self._on_message = on_message
        self._sync_timeout_ms = sync_timeout_ms
        self._startup_ts = now_ms()
        client.add_event_callback(self._message_callback, RoomMessageText)

    async def _message_callback(self, room: MatrixRoom, event: RoomMessageText) -> None:
        # History replayed by the first sync is not a command.
        ts = getattr(event, "server_timestamp", None)
        if ts is not None and ts <= self._startup_ts:
            return
        if event.sender == self._client.user_id:
            return

        owner = self._owners.by_channel(room.room_id)
        if owner is None:
            return

        body = (event.body or "").strip()
        if not body:
            return
        logger.info("Matrix <%s> %s: %r", room.display_name, event.sender, body)

        try:
            reply = await self._on_message(owner.id, body)
        except Exception:
            logger.exception("Command handler crashed owner=%s", owner.id)
            reply = "Internal error while handling a command."

        if not reply:
            return
        try:
            resp = await send_text(self._client, room_id=room.room_id, text=reply)
            if isinstance(resp, RoomSendError):
                logger.error("Command reply not delivered room=%s: %s", room.room_id, resp.message)
        except Exception:
            logger.exception("Failed to send command reply room=%s", room.room_id)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sync until stop_event is set or the task is cancelled."""
        try:
            logger.info("Matrix initial sync...")
            await self._client.sync(timeout=self._sync_timeout_ms, full_state=True)
            logger.info("Matrix initial sync done. Joined rooms: %d", len(self._client.rooms))

            while not stop_event.is_set():
                await self._client.sync(timeout=self._sync_timeout_ms, full_state=False)
        except asyncio.CancelledError:
            logger.info("Matrix connector cancelled.")
            raise
        finally:
            await self._client.close()
            logger.info("Matrix client closed.")
