"""Host runtime interface consumed by the channel's inbound pipeline."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable


@dataclass
class AgentRoute:
    """Which agent handles a peer and under which session."""
    agent_id: str
    session_key: str
    main_session_key: str


@dataclass
class InboundContext:
    """Normalized inbound message handed to the host."""
    body: str
    raw_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    chat_type: str  # "direct" | "group"
    sender_id: str
    sender_name: str
    conversation_label: str = ""
    group_subject: str | None = None
    message_sid: str = ""
    timestamp: float | None = None
    media_path: str | None = None
    media_type: str | None = None
    provider: str = "dingtalk"
    command_authorized: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReplyPayload:
    """One increment of reply content produced by the agent."""
    text: str = ""
    markdown: str | None = None
    kind: str = "block"  # "block" | "final"

    @property
    def content(self) -> str:
        return self.markdown or self.text


@dataclass
class DeliveryResult:
    ok: bool
    error: str | None = None


Deliver = Callable[[ReplyPayload], Awaitable[DeliveryResult]]


@dataclass
class ReplyDispatcher:
    """Forwards reply increments to the channel's deliver callback."""
    deliver: Deliver
    delivered: int = 0
    failed: int = 0
    idle: bool = False

    async def send(self, payload: ReplyPayload) -> DeliveryResult:
        result = await self.deliver(payload)
        if result.ok:
            self.delivered += 1
        else:
            self.failed += 1
        return result


@dataclass
class ReplyDispatcherHandle:
    dispatcher: ReplyDispatcher
    reply_options: dict[str, Any]
    mark_idle: Callable[[], None]


class HostRuntime(ABC):
    """
    Agent routing, session bookkeeping and reply generation owned by the host.

    The DingTalk channel only normalizes inbound events and delivers replies;
    everything in between goes through this interface.
    """

    @abstractmethod
    def resolve_agent_route(self, account_id: str, peer_kind: str, peer_id: str) -> AgentRoute:
        pass

    @abstractmethod
    def resolve_store_path(self, agent_id: str) -> Path:
        pass

    @abstractmethod
    def read_session_updated_at(self, store_path: Path, session_key: str) -> float | None:
        pass

    @abstractmethod
    async def record_inbound_session(
        self, store_path: Path, session_key: str, ctx: InboundContext, last_route: dict[str, Any],
    ) -> None:
        pass

    @abstractmethod
    def format_inbound_envelope(
        self,
        *,
        channel: str,
        from_label: str,
        body: str,
        chat_type: str,
        sender_name: str,
        sender_id: str,
        timestamp: float | None = None,
        previous_timestamp: float | None = None,
    ) -> str:
        pass

    @abstractmethod
    def finalize_inbound_context(self, ctx: InboundContext) -> InboundContext:
        pass

    @abstractmethod
    def create_reply_dispatcher(self, deliver: Deliver) -> ReplyDispatcherHandle:
        pass

    @abstractmethod
    async def dispatch_reply(self, ctx: InboundContext, handle: ReplyDispatcherHandle) -> None:
        """Generate the reply for *ctx* and push each increment through the dispatcher."""
        pass
