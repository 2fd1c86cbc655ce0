"""DingTalk channel implementation using Stream Mode."""

import asyncio
import json
import time
from typing import Any, Callable, Coroutine

import httpx
from dingtalk_stream import AckMessage, CallbackHandler, CallbackMessage
from dingtalk_stream.chatbot import ChatbotMessage
from loguru import logger

from dingbot.channels.dingtalk.auth import AccessTokenCache
from dingbot.channels.dingtalk.card import CardService, CardStore
from dingbot.channels.dingtalk.connection import ConnectionManager, DingTalkStreamTransport, StreamTransport
from dingbot.channels.dingtalk.dedup import DedupStore
from dingbot.channels.dingtalk.errors import DingTalkConfigError
from dingbot.channels.dingtalk.inbound import InboundHandler
from dingbot.channels.dingtalk.media import cleanup_orphaned_temp_files, detect_media_type
from dingbot.channels.dingtalk.message import normalize_target, resolve_target
from dingbot.channels.dingtalk.peers import PeerIdRegistry
from dingbot.channels.dingtalk.send import SendService
from dingbot.channels.dingtalk.types import AccountStatus, MediaType, ProbeResult, SendOptions, SendResult
from dingbot.config.schema import Config, DingTalkAccountConfig, ResolvedAccount
from dingbot.runtime.base import HostRuntime

MAINTENANCE_INTERVAL_S = 5 * 60

TransportFactory = Callable[[DingTalkAccountConfig, dict[str, CallbackHandler]], StreamTransport]


def _stream_transport(config: DingTalkAccountConfig, handlers: dict[str, CallbackHandler]) -> StreamTransport:
    return DingTalkStreamTransport(config.client_id, config.client_secret, handlers)


class DingbotCallbackHandler(CallbackHandler):
    """
    Stream SDK callback handler for robot messages.

    Returning from :meth:`process` is what makes the SDK send the ack, so the
    pipeline is scheduled in the background and the ack goes out immediately.
    """

    def __init__(self, channel: "DingTalkChannel", inbound: InboundHandler):
        super().__init__()
        self.channel = channel
        self.inbound = inbound

    async def process(self, message: CallbackMessage):
        """Process incoming stream message."""
        try:
            data = message.data
            if isinstance(data, str):
                data = json.loads(data)
            self.channel._schedule(self.channel._process_event(self.inbound, data))
            return AckMessage.STATUS_OK, "OK"
        except Exception as e:
            logger.error("Error processing DingTalk message: {}", e)
            # Ack anyway so the server does not redeliver a payload we cannot parse
            return AckMessage.STATUS_OK, "Error"


class AccountHandle:
    """Running account returned by :meth:`DingTalkChannel.start_account`."""

    def __init__(self, account_id: str, manager: ConnectionManager, status: AccountStatus):
        self.account_id = account_id
        self.manager = manager
        self.status = status
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info("[{}] Stopping DingTalk account", self.account_id)
        await self.manager.stop()
        self.status.running = False
        self.status.last_stop_at = time.time()

    async def wait(self) -> None:
        """Block until the connection is stopped, then settle the status."""
        await self.manager.wait_for_stop()
        await self.stop()


class DingTalkChannel:
    """
    DingTalk channel using Stream Mode.

    Receives robot events over the ``dingtalk-stream`` websocket and replies
    through session webhooks, proactive robot APIs and AI cards. Token, dedup,
    card and peer stores are shared by every account of this channel.
    """

    name = "dingtalk"

    def __init__(
        self,
        config: Config,
        runtime: HostRuntime,
        *,
        http: httpx.AsyncClient | None = None,
        transport_factory: TransportFactory | None = None,
        temp_dir: str | None = None,
    ):
        self.config = config
        self.runtime = runtime
        self._http = http or httpx.AsyncClient(timeout=30.0)
        self._transport_factory = transport_factory or _stream_transport
        self.temp_dir = temp_dir

        self.tokens = AccessTokenCache(self._http)
        self.dedup = DedupStore()
        self.peers = PeerIdRegistry()
        self.card_store = CardStore()
        self.cards = CardService(self._http, self.tokens, self.card_store, self.peers)
        self.sender = SendService(self._http, self.tokens, self.peers, self.cards)

        self._statuses: dict[str, AccountStatus] = {}
        self._handles: dict[str, AccountHandle] = {}
        # Hold references to background tasks to prevent GC
        self._background_tasks: set[asyncio.Task] = set()
        self._maintenance_task: asyncio.Task | None = None

    def status(self, account_id: str) -> AccountStatus:
        return self._statuses.setdefault(account_id, AccountStatus(account_id=account_id))

    def summary(self) -> dict[str, dict[str, Any]]:
        out = {}
        for account_id in self.config.list_account_ids():
            account = self.config.resolve_account(account_id)
            out[account_id] = self.status(account_id).summary(account.config.is_configured)
        return out

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _process_event(self, inbound: InboundHandler, data: dict) -> None:
        try:
            await inbound.on_event(data)
        except Exception as e:
            logger.exception("[{}] Error processing DingTalk message: {}", inbound.account_id, e)

    def build_inbound_handler(self, account: ResolvedAccount) -> InboundHandler:
        return InboundHandler(
            account.account_id,
            account.config,
            self.runtime,
            http=self._http,
            tokens=self.tokens,
            sender=self.sender,
            cards=self.cards,
            dedup=self.dedup,
            peers=self.peers,
            temp_dir=self.temp_dir,
        )

    async def start_account(self, account: ResolvedAccount, abort: asyncio.Event | None = None) -> AccountHandle:
        """Open the stream for *account* and wire robot messages into the pipeline."""
        config = account.config
        status = self.status(account.account_id)
        if not config.is_configured:
            raise DingTalkConfigError("DingTalk clientId and clientSecret are required")

        logger.info("[{}] Starting DingTalk Stream client with Client ID: {}...", account.account_id, config.client_id)
        cleanup_orphaned_temp_files(self.temp_dir)

        handler = DingbotCallbackHandler(self, self.build_inbound_handler(account))
        transport = self._transport_factory(config, {ChatbotMessage.TOPIC: handler})
        manager = ConnectionManager(transport, account.account_id, config.connection, abort=abort)

        try:
            await manager.connect()
        except Exception as e:
            status.running = False
            status.last_error = str(e)
            await manager.stop()
            raise

        handle = AccountHandle(account.account_id, manager, status)
        self._handles[account.account_id] = handle
        if manager.is_stopped:
            # Aborted while connecting
            await handle.stop()
            return handle

        status.running = True
        status.last_start_at = time.time()
        status.last_error = None
        if abort is not None:
            self._schedule(self._stop_on_abort(abort, handle))
        self._ensure_maintenance()
        logger.info("[{}] DingTalk bot started with Stream Mode", account.account_id)
        return handle

    async def _stop_on_abort(self, abort: asyncio.Event, handle: AccountHandle) -> None:
        await abort.wait()
        await handle.stop()

    def _ensure_maintenance(self) -> None:
        if self._maintenance_task is None or self._maintenance_task.done():
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(MAINTENANCE_INTERVAL_S)
            cards = self.card_store.sweep()
            messages = self.dedup.sweep()
            if cards or messages:
                logger.debug("DingTalk cache sweep removed {} cards, {} dedup keys", cards, messages)

    async def run(self) -> None:
        """Start every enabled account and block until all of them stop."""
        handles = []
        for account_id in self.config.list_account_ids():
            account = self.config.resolve_account(account_id)
            if not account.enabled:
                logger.info("[{}] DingTalk account disabled, skipping", account_id)
                continue
            handles.append(await self.start_account(account))
        if not handles:
            logger.warning("No DingTalk accounts configured")
            return
        await asyncio.gather(*(h.wait() for h in handles))

    async def stop(self) -> None:
        """Stop all accounts and release the HTTP client."""
        for handle in list(self._handles.values()):
            await handle.stop()
        self._handles.clear()
        if self._maintenance_task:
            self._maintenance_task.cancel()
            self._maintenance_task = None
        for task in list(self._background_tasks):
            task.cancel()
        self._background_tasks.clear()
        self.tokens.clear()
        self.dedup.clear()
        self.peers.clear()
        self.card_store.clear()
        await self._http.aclose()

    async def send_text(self, to: str, text: str, account_id: str | None = None) -> SendResult:
        """Proactive (or card) send to a user id or ``cid`` conversation id."""
        account = self.config.resolve_account(account_id)
        target = resolve_target(normalize_target(to))
        if not target.ok:
            return SendResult(ok=False, error=target.error)
        if not account.config.is_configured:
            return SendResult(ok=False, error="DingTalk not configured")
        return await self.sender.send_message(
            account.config, target.to, text, SendOptions(account_id=account.account_id),
        )

    async def send_media(
        self,
        to: str,
        media_path: str,
        account_id: str | None = None,
        media_type: MediaType | None = None,
    ) -> SendResult:
        account = self.config.resolve_account(account_id)
        target = resolve_target(normalize_target(to))
        if not target.ok:
            return SendResult(ok=False, error=target.error)
        if not account.config.is_configured:
            return SendResult(ok=False, error="DingTalk not configured")
        return await self.sender.send_proactive_media(
            account.config, target.to, media_path, media_type or detect_media_type(media_path),
        )

    async def probe(self, account_id: str | None = None) -> ProbeResult:
        """Validate credentials by fetching an access token."""
        account = self.config.resolve_account(account_id)
        if not account.config.is_configured:
            return ProbeResult(ok=False, error="Not configured")
        try:
            await self.tokens.get_token(account.config)
        except Exception as e:
            return ProbeResult(ok=False, error=str(e))
        return ProbeResult(ok=True, details={"clientId": account.config.client_id})
