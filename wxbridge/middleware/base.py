"""Middleware chain: each middleware can pass through or short-circuit."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pydantic import BaseModel, ConfigDict

from wxbridge.core.models import InboundMessage


class MessageContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: InboundMessage

    @property
    def user_id(self) -> str:
        return self.message.sender_id

    @property
    def text(self) -> str:
        return self.message.raw_content


NextHandler = Callable[[MessageContext], Awaitable[None]]


class Middleware(ABC):
    @abstractmethod
    async def process(self, ctx: MessageContext, call_next: NextHandler) -> None: ...


class MiddlewareChain:
    def __init__(self) -> None:
        self._middleware: list[Middleware] = []

    def add(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    async def run(self, ctx: MessageContext, handler: NextHandler) -> None:
        chain = handler
        for mw in reversed(self._middleware):
            chain = _wrap(mw, chain)
        await chain(ctx)


def _wrap(mw: Middleware, nxt: NextHandler) -> NextHandler:
    async def _next(c: MessageContext) -> None:
        await mw.process(c, nxt)

    return _next
