import logging
from typing import Protocol

import discord

from calendar_alerts.errors import DeliveryError, RecipientBlockedError
from calendar_alerts.utils.fmt import chunk_message

log = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, recipient_id: int, text: str, **options) -> None:
        """Deliver text to one recipient or raise DeliveryError / RecipientBlockedError."""


class DiscordTransport:
    """Direct messages through a logged-in discord.py client."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def _resolve(self, recipient_id: int) -> discord.abc.User:
        user = self.client.get_user(recipient_id)
        if user is not None:
            return user
        return await self.client.fetch_user(recipient_id)

    async def send(self, recipient_id: int, text: str, **options) -> None:
        try:
            user = await self._resolve(recipient_id)
            for part in chunk_message(text):
                await user.send(part, **options)
        except (discord.Forbidden, discord.NotFound) as ex:
            raise RecipientBlockedError(recipient_id, f"{type(ex).__name__}: {ex.text or ex}") from ex
        except discord.HTTPException as ex:
            raise DeliveryError(recipient_id, f"HTTP {ex.status}: {ex.text or ex}") from ex
