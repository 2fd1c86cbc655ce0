"""In-process host runtime with a JSON session store."""

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from loguru import logger

from dingbot.runtime.base import (
    AgentRoute,
    Deliver,
    HostRuntime,
    InboundContext,
    ReplyDispatcher,
    ReplyDispatcherHandle,
    ReplyPayload,
)
from dingbot.utils.helpers import ensure_dir, get_sessions_path

ReplyHandler = Callable[[InboundContext], AsyncIterator[ReplyPayload]]


async def echo_handler(ctx: InboundContext) -> AsyncIterator[ReplyPayload]:
    """Default reply handler: repeat the message back."""
    yield ReplyPayload(text=f"Echo: {ctx.raw_body}", kind="final")


class LocalRuntime(HostRuntime):
    """
    Minimal host used by the CLI gateway and the tests.

    Sessions are stored as ``<store_dir>/<agent_id>.json`` keyed by session key.
    Replies come from *handler*, an async generator of :class:`ReplyPayload`.
    """

    def __init__(
        self,
        store_dir: Path | None = None,
        handler: ReplyHandler | None = None,
        agent_id: str = "main",
    ):
        self.store_dir = store_dir
        self.handler = handler or echo_handler
        self.agent_id = agent_id

    def resolve_agent_route(self, account_id: str, peer_kind: str, peer_id: str) -> AgentRoute:
        # Session keys are lowercased; outbound ids go back through the peer registry
        session_key = f"agent:{self.agent_id}:dingtalk:{peer_kind}:{peer_id}".lower()
        return AgentRoute(
            agent_id=self.agent_id,
            session_key=session_key,
            main_session_key=f"agent:{self.agent_id}:main",
        )

    def resolve_store_path(self, agent_id: str) -> Path:
        base = ensure_dir(self.store_dir) if self.store_dir else get_sessions_path()
        return base / f"{agent_id}.json"

    def _load(self, store_path: Path) -> dict[str, Any]:
        if not store_path.exists():
            return {}
        try:
            return json.loads(store_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to read session store {}: {}", store_path, e)
            return {}

    def read_session_updated_at(self, store_path: Path, session_key: str) -> float | None:
        entry = self._load(store_path).get(session_key)
        return entry.get("updatedAt") if isinstance(entry, dict) else None

    async def record_inbound_session(
        self, store_path: Path, session_key: str, ctx: InboundContext, last_route: dict[str, Any],
    ) -> None:
        sessions = self._load(store_path)
        sessions[session_key] = {
            "updatedAt": time.time(),
            "chatType": ctx.chat_type,
            "lastFrom": ctx.from_,
            "lastMessageSid": ctx.message_sid,
            "lastRoute": last_route,
        }
        store_path.parent.mkdir(parents=True, exist_ok=True)
        store_path.write_text(json.dumps(sessions, indent=2, ensure_ascii=False), encoding="utf-8")

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
        header = f"[{channel} {from_label}"
        if timestamp:
            # DingTalk createAt is in milliseconds
            ts = timestamp / 1000 if timestamp > 1e12 else timestamp
            header += " " + datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")
        return f"{header}] {body}"

    def finalize_inbound_context(self, ctx: InboundContext) -> InboundContext:
        if not ctx.conversation_label:
            ctx.conversation_label = ctx.from_
        return ctx

    def create_reply_dispatcher(self, deliver: Deliver) -> ReplyDispatcherHandle:
        dispatcher = ReplyDispatcher(deliver=deliver)

        def mark_idle() -> None:
            dispatcher.idle = True

        return ReplyDispatcherHandle(dispatcher=dispatcher, reply_options={}, mark_idle=mark_idle)

    async def dispatch_reply(self, ctx: InboundContext, handle: ReplyDispatcherHandle) -> None:
        async for payload in self.handler(ctx):
            result = await handle.dispatcher.send(payload)
            if not result.ok:
                logger.warning("Reply delivery failed for {}: {}", ctx.session_key, result.error)
