"""Allow-list authentication with pairing-code enrolment."""

from collections.abc import Awaitable, Callable

import structlog

from wxbridge.exceptions import StorageError
from wxbridge.middleware.base import MessageContext, Middleware, NextHandler
from wxbridge.storage.base import AllowListStore, PairingCodeStore

logger = structlog.get_logger()

PAIRING_CONFIRMATION = "✅ Pairing succeeded! You can start chatting now."

ReplySender = Callable[[str, str], Awaitable[bool]]


class PairingAuthMiddleware(Middleware):
    """Forward messages from allowed senders; enrol senders who echo the pairing code.

    Anything else from an unknown sender is dropped without a reply.
    """

    def __init__(
        self,
        allow_list: AllowListStore,
        pairing_codes: PairingCodeStore,
        reply: ReplySender,
    ) -> None:
        self._allow_list = allow_list
        self._pairing_codes = pairing_codes
        self._reply = reply

    async def process(self, ctx: MessageContext, call_next: NextHandler) -> None:
        if await self._allow_list.is_allowed(ctx.user_id):
            await call_next(ctx)
            return

        content = ctx.text.strip()
        code = await self._pairing_codes.current()
        if not content or content.upper() != code.upper():
            logger.info("auth_rejected", user_id=ctx.user_id)
            return

        try:
            await self._allow_list.add(ctx.user_id)
        except StorageError:
            logger.exception("pairing_persist_failed", user_id=ctx.user_id)
            return
        logger.info("pairing_succeeded", user_id=ctx.user_id)
        await self._reply(ctx.user_id, PAIRING_CONFIRMATION)
