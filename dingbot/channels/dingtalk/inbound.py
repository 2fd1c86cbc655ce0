"""Inbound robot event pipeline: dedup, policy checks, host hand-off and reply delivery."""

import httpx
from loguru import logger

from dingbot.channels.dingtalk.access import is_group_allowed, is_sender_allowed, normalize_allow_from
from dingbot.channels.dingtalk.auth import AccessTokenCache
from dingbot.channels.dingtalk.card import CardInstance, CardService
from dingbot.channels.dingtalk.dedup import DedupStore, dedup_key
from dingbot.channels.dingtalk.media import download_media, remove_temp_file
from dingbot.channels.dingtalk.message import extract_message_content
from dingbot.channels.dingtalk.peers import PeerIdRegistry
from dingbot.channels.dingtalk.send import SendService
from dingbot.channels.dingtalk.types import MediaFile, MessageContent, SendOptions
from dingbot.config.schema import DingTalkAccountConfig
from dingbot.runtime.base import DeliveryResult, HostRuntime, InboundContext, ReplyPayload
from dingbot.utils.helpers import mask_sensitive_data

THINKING_TEXT = "> 🤔 **正在思考中，请稍候...**"
CARD_DONE_TEXT = "✅ 已完成"


def access_denied_text(sender_id: str) -> str:
    return (
        "⛔ 访问受限\n\n"
        f"您的用户ID：`{sender_id}`\n\n"
        "请联系管理员将此ID添加到允许列表中。"
    )


def is_self_message(data: dict) -> bool:
    bot_id = data.get("chatbotUserId")
    if not bot_id:
        return False
    return data.get("senderId") == bot_id or data.get("senderStaffId") == bot_id


class InboundHandler:
    """
    Processes robot events for one account.

    The stream ack has already been sent by the time :meth:`on_event` runs.
    """

    def __init__(
        self,
        account_id: str,
        config: DingTalkAccountConfig,
        runtime: HostRuntime,
        *,
        http: httpx.AsyncClient,
        tokens: AccessTokenCache,
        sender: SendService,
        cards: CardService,
        dedup: DedupStore,
        peers: PeerIdRegistry,
        temp_dir: str | None = None,
    ):
        self.account_id = account_id
        self.config = config
        self.runtime = runtime
        self._http = http
        self._tokens = tokens
        self.sender = sender
        self.cards = cards
        self.dedup = dedup
        self.peers = peers
        self.temp_dir = temp_dir

    async def on_event(self, data: dict) -> None:
        """Dedup, drop self-messages, then run the full pipeline."""
        msg_id = data.get("msgId")
        key = dedup_key(self.config.robot_identity, msg_id) if msg_id else None
        if key and self.dedup.is_processed(key):
            logger.debug("[{}] Skipping duplicate message {}", self.account_id, key)
            return

        if is_self_message(data):
            logger.debug("[{}] Ignoring robot self-message", self.account_id)
            return

        if key:
            self.dedup.mark_processed(key)
        await self.handle_message(data)

    async def handle_message(self, data: dict) -> None:
        logger.log(
            "INFO" if self.config.debug else "DEBUG",
            "[{}] Inbound data: {}", self.account_id, mask_sensitive_data(data),
        )

        content = extract_message_content(data)
        if not content.text:
            return

        is_direct = data.get("conversationType") == "1"
        sender_id = data.get("senderStaffId") or data.get("senderId") or ""
        sender_name = data.get("senderNick") or "Unknown"
        conversation_id = data.get("conversationId") or ""
        webhook = data.get("sessionWebhook") or ""

        self.peers.register(conversation_id)
        self.peers.register(sender_id)

        if not await self._check_access(is_direct, sender_id, conversation_id, webhook):
            return

        media: MediaFile | None = None
        try:
            if content.media_code and self.config.robot_code:
                media = await download_media(
                    self._http, self._tokens, self.config, content.media_code, self.temp_dir,
                )
            await self._dispatch(data, content, media, is_direct, sender_id, sender_name, webhook)
        finally:
            remove_temp_file(media.path if media else None)

    async def _check_access(self, is_direct: bool, sender_id: str, conversation_id: str, webhook: str) -> bool:
        if is_direct and self.config.dm_policy == "allowlist":
            allow = normalize_allow_from(self.config.allow_from)
            if not is_sender_allowed(allow, sender_id):
                logger.warning("[{}] Blocked direct message from {}", self.account_id, sender_id)
                try:
                    await self.sender.send_by_session(self.config, webhook, access_denied_text(sender_id))
                except Exception as e:
                    logger.warning("[{}] Failed to send access denied notice: {}", self.account_id, e)
                return False

        if not is_direct and self.config.group_policy == "allowlist":
            allow = normalize_allow_from(self.config.allow_from)
            if not is_group_allowed(allow, conversation_id):
                logger.info("[{}] Ignoring message from group {} not in allowlist", self.account_id, conversation_id)
                return False

        return True

    async def _dispatch(
        self,
        data: dict,
        content: MessageContent,
        media: MediaFile | None,
        is_direct: bool,
        sender_id: str,
        sender_name: str,
        webhook: str,
    ) -> None:
        rt = self.runtime
        conversation_id = data.get("conversationId") or ""
        group_name = data.get("conversationTitle") or "Group"
        to = sender_id if is_direct else conversation_id

        route = rt.resolve_agent_route(self.account_id, "dm" if is_direct else "group", to)
        store_path = rt.resolve_store_path(route.agent_id)
        previous = rt.read_session_updated_at(store_path, route.session_key)

        from_label = f"{sender_name} ({sender_id})" if is_direct else f"{group_name} - {sender_name}"
        chat_type = "direct" if is_direct else "group"
        body = rt.format_inbound_envelope(
            channel="DingTalk",
            from_label=from_label,
            body=content.text,
            chat_type=chat_type,
            sender_name=sender_name,
            sender_id=sender_id,
            timestamp=data.get("createAt"),
            previous_timestamp=previous,
        )
        ctx = rt.finalize_inbound_context(InboundContext(
            body=body,
            raw_body=content.text,
            from_=to,
            to=to,
            session_key=route.session_key,
            account_id=self.account_id,
            chat_type=chat_type,
            sender_id=sender_id,
            sender_name=sender_name,
            conversation_label=from_label,
            group_subject=None if is_direct else group_name,
            message_sid=data.get("msgId") or "",
            timestamp=data.get("createAt"),
            media_path=media.path if media else None,
            media_type=media.mime_type if media else None,
        ))
        await rt.record_inbound_session(
            store_path,
            ctx.session_key or route.session_key,
            ctx,
            {"sessionKey": route.main_session_key, "channel": "dingtalk", "to": to, "accountId": self.account_id},
        )

        logger.info("[{}] Inbound from {}: {}", self.account_id, sender_name, content.text[:50])

        at_user = None if is_direct else sender_id
        card = await self._send_thinking(to, webhook, at_user)
        accumulated = ""

        async def deliver(payload: ReplyPayload) -> DeliveryResult:
            nonlocal accumulated
            text = payload.content
            if not text:
                return DeliveryResult(ok=True)
            try:
                if card is not None and not card.terminal:
                    # Card updates replace the whole body
                    accumulated = text if payload.kind == "final" else accumulated + text
                    try:
                        await self.cards.stream(card, accumulated)
                        return DeliveryResult(ok=True)
                    except Exception as e:
                        logger.warning("[{}] Card stream failed, replying via session webhook: {}", self.account_id, e)
                await self.sender.send_by_session(self.config, webhook, text, SendOptions(at_user_id=at_user))
                return DeliveryResult(ok=True)
            except Exception as e:
                logger.error("[{}] Reply failed: {}", self.account_id, e)
                return DeliveryResult(ok=False, error=str(e))

        handle = rt.create_reply_dispatcher(deliver)
        try:
            await rt.dispatch_reply(ctx, handle)
        finally:
            if card is not None and not card.terminal:
                try:
                    await self.cards.finish(card, accumulated or CARD_DONE_TEXT)
                except Exception as e:
                    logger.warning("[{}] Failed to finish card {}: {}", self.account_id, card.card_id, e)
            handle.mark_idle()

    async def _send_thinking(self, to: str, webhook: str, at_user: str | None) -> CardInstance | None:
        """Create the reply card in card mode; otherwise post the thinking notice if enabled."""
        if self.config.message_type == "card":
            card = await self.cards.create(self.config, to, self.account_id)
            if card is not None and self.config.show_thinking:
                try:
                    await self.cards.stream(card, THINKING_TEXT)
                except Exception as e:
                    logger.debug("[{}] Thinking card update failed: {}", self.account_id, e)
            return card

        if self.config.show_thinking:
            try:
                await self.sender.send_by_session(
                    self.config, webhook, THINKING_TEXT, SendOptions(at_user_id=at_user),
                )
            except Exception as e:
                logger.debug("[{}] Thinking message failed: {}", self.account_id, e)
        return None
