"""AI card streaming: card state machine, card cache and the card API backend."""

import json
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import httpx
from loguru import logger

from dingbot.channels.dingtalk.auth import AccessTokenCache
from dingbot.channels.dingtalk.errors import DingTalkConfigError
from dingbot.channels.dingtalk.message import proactive_route
from dingbot.channels.dingtalk.peers import PeerIdRegistry
from dingbot.config.schema import DingTalkAccountConfig

DINGTALK_API = "https://api.dingtalk.com"
# Terminal cards are kept this long for late lookups
CARD_RETENTION_S = 60 * 60
# Tokens live 2h on the platform; refresh well before that
TOKEN_REFRESH_AGE_S = 90 * 60
THINKING_TRUNCATE_LENGTH = 500


class CardStatus(str, Enum):
    PROCESSING = "PROCESSING"
    INPUTING = "INPUTING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (CardStatus.FINISHED, CardStatus.FAILED)


class CardEvent(str, Enum):
    STREAMED = "streamed"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass
class CardInstance:
    """A live AI card and the credentials used to update it."""
    card_id: str  # outTrackId
    access_token: str
    conversation_id: str
    account_id: str
    config: DingTalkAccountConfig
    created_at: float
    token_refreshed_at: float
    last_updated: float
    state: CardStatus = CardStatus.PROCESSING

    @property
    def terminal(self) -> bool:
        return self.state.terminal


def target_key(account_id: str, conversation_id: str) -> str:
    return f"{account_id}:{conversation_id}"


class CardStore:
    """
    Owns card instances and the one-live-card-per-target mapping.

    Every state change goes through :meth:`transition`.
    """

    def __init__(self, *, retention: float = CARD_RETENTION_S, clock: Callable[[], float] = time.time):
        self.retention = retention
        self._clock = clock
        self._cards: dict[str, CardInstance] = {}
        self._active: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._cards)

    def add(self, card: CardInstance) -> None:
        """Register *card*; it supersedes any card previously mapped to the same target."""
        self._cards[card.card_id] = card
        key = target_key(card.account_id, card.conversation_id)
        self._active[key] = card.card_id
        logger.debug("Registered active card mapping: {} -> {}", key, card.card_id)

    def get(self, card_id: str) -> CardInstance | None:
        return self._cards.get(card_id)

    def active_for(self, account_id: str, conversation_id: str) -> CardInstance | None:
        """Return the live card for a target, dropping the mapping if it went terminal."""
        key = target_key(account_id, conversation_id)
        card_id = self._active.get(key)
        if card_id is None:
            return None
        card = self._cards.get(card_id)
        if card is None or card.terminal:
            del self._active[key]
            return None
        return card

    def transition(self, card: CardInstance, event: CardEvent) -> CardStatus:
        """Apply *event* to *card*. Terminal states never change."""
        if card.terminal:
            return card.state

        if event is CardEvent.FAILED:
            card.state = CardStatus.FAILED
        elif event is CardEvent.FINISHED:
            card.state = CardStatus.FINISHED
        elif card.state is CardStatus.PROCESSING:
            card.state = CardStatus.INPUTING

        card.last_updated = self._clock()
        return card.state

    def sweep(self) -> int:
        """Evict terminal cards past the retention window; live cards always stay."""
        now = self._clock()
        stale = [
            cid for cid, card in self._cards.items()
            if card.terminal and now - card.last_updated > self.retention
        ]
        for cid in stale:
            card = self._cards.pop(cid)
            key = target_key(card.account_id, card.conversation_id)
            if self._active.get(key) == cid:
                del self._active[key]
        return len(stale)

    def clear(self) -> None:
        self._cards.clear()
        self._active.clear()


class CardBackend(ABC):
    """Card API integration used by :class:`CardService`."""

    @abstractmethod
    async def create(
        self, token: str, config: DingTalkAccountConfig, conversation_id: str, out_track_id: str,
    ) -> None:
        """Create the card and deliver it into the conversation."""
        pass

    @abstractmethod
    async def stream(self, token: str, body: dict[str, Any]) -> None:
        """Push one full-replacement content update."""
        pass


class AICardBackend(CardBackend):
    """Single-call ``createAndDeliver`` flow followed by ``card/streaming`` updates."""

    def __init__(self, http: httpx.AsyncClient, api_base: str = DINGTALK_API):
        self._http = http
        self._api_base = api_base

    async def create(
        self, token: str, config: DingTalkAccountConfig, conversation_id: str, out_track_id: str,
    ) -> None:
        is_group = conversation_id.startswith("cid")
        if is_group and not config.robot_code:
            logger.warning("robot_code not configured, using client_id for group card delivery")

        body: dict[str, Any] = {
            "cardTemplateId": config.card_template_id,
            "outTrackId": out_track_id,
            "cardData": {"cardParamMap": {}},
            "callbackType": "STREAM",
            "imGroupOpenSpaceModel": {"supportForward": True},
            "imRobotOpenSpaceModel": {"supportForward": True},
            "openSpaceId": (
                f"dtv1.card//IM_GROUP.{conversation_id}" if is_group
                else f"dtv1.card//IM_ROBOT.{conversation_id}"
            ),
            "userIdType": 1,
        }
        if is_group:
            body["imGroupOpenDeliverModel"] = {"robotCode": config.robot_identity}
        else:
            body["imRobotOpenDeliverModel"] = {"spaceType": "IM_ROBOT"}

        resp = await self._http.post(
            f"{self._api_base}/v1.0/card/instances/createAndDeliver",
            json=body,
            headers={"x-acs-dingtalk-access-token": token},
        )
        resp.raise_for_status()
        logger.debug("createAndDeliver response: {} {}", resp.status_code, resp.text)

    async def stream(self, token: str, body: dict[str, Any]) -> None:
        resp = await self._http.put(
            f"{self._api_base}/v1.0/card/streaming",
            json=body,
            headers={"x-acs-dingtalk-access-token": token},
        )
        resp.raise_for_status()


def _is_template_mismatch(error: BaseException) -> bool:
    """500 with body code ``unknownError`` means the template key does not exist."""
    if not isinstance(error, httpx.HTTPStatusError) or error.response.status_code != 500:
        return False
    try:
        data = error.response.json()
    except ValueError:
        return False
    return isinstance(data, dict) and data.get("code") == "unknownError"


def _is_unauthorized(error: BaseException) -> bool:
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 401


def template_mismatch_message(key: str, template_id: str) -> str:
    return (
        "⚠️ **[DingTalk] AI Card 串流更新失败 (500 unknownError)**\n\n"
        f"这通常是因为 `cardTemplateKey` (当前值: `{key}`) 与钉钉卡片模板 `{template_id}` "
        "中定义的正文变量名不匹配。\n\n"
        "**建议操作**：\n"
        "1. 前往钉钉开发者后台检查该模板的“变量管理”\n"
        "2. 确保配置中的 `cardTemplateKey` 与模板中用于显示内容的字段变量名完全一致\n\n"
        "*注意：当前及后续消息将自动转为 Markdown 发送，直到问题修复。*"
    )


def format_content_for_card(content: str, kind: str = "thinking") -> str:
    """Quote a thinking or tool snippet for display inside a card."""
    if not content:
        return ""

    truncated = content[:THINKING_TRUNCATE_LENGTH]
    if len(content) > THINKING_TRUNCATE_LENGTH:
        truncated += "…"

    lines = []
    for line in truncated.split("\n"):
        # Lone underscores would open markdown emphasis
        line = re.sub(r"^_(?=[^ ])", "*", line)
        line = re.sub(r"(?<=[^ ])_$", "*", line)
        lines.append(f"> {line}")

    emoji, label = ("🤔", "思考中") if kind == "thinking" else ("🛠️", "工具执行")
    return f"{emoji} **{label}**\n" + "\n".join(lines)


class CardService:
    """Creates AI cards and streams content into them."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: AccessTokenCache,
        store: CardStore,
        peers: PeerIdRegistry,
        *,
        backend: CardBackend | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._http = http
        self._tokens = tokens
        self.store = store
        self._peers = peers
        self._backend = backend or AICardBackend(http)
        self._clock = clock

    async def create(
        self, config: DingTalkAccountConfig, conversation_id: str, account_id: str,
    ) -> CardInstance | None:
        """Create and deliver a card. Any failure is logged and yields ``None``."""
        out_track_id = f"card_{uuid.uuid4()}"
        try:
            if not config.card_template_id:
                raise DingTalkConfigError("DingTalk card_template_id is not configured")
            token = await self._tokens.get_token(config)
            logger.info("[{}] Creating AI card outTrackId={}", account_id, out_track_id)
            await self._backend.create(token, config, conversation_id, out_track_id)
        except Exception as e:
            logger.error("[{}] AI card create failed: {}", account_id, e)
            if isinstance(e, httpx.HTTPStatusError):
                logger.error("AI card error response: {} {}", e.response.status_code, e.response.text)
            return None

        now = self._clock()
        card = CardInstance(
            card_id=out_track_id,
            access_token=token,
            conversation_id=conversation_id,
            account_id=account_id,
            config=config,
            created_at=now,
            token_refreshed_at=now,
            last_updated=now,
        )
        self.store.add(card)
        return card

    async def stream(self, card: CardInstance, content: str, finished: bool = False) -> None:
        """Replace the card's content. Raises after marking the card FAILED."""
        if self._clock() - card.token_refreshed_at > TOKEN_REFRESH_AGE_S:
            logger.debug("Card token age exceeds threshold, refreshing")
            try:
                card.access_token = await self._tokens.get_token(card.config)
                card.token_refreshed_at = self._clock()
            except Exception as e:
                logger.warning("Failed to refresh card token: {}", e)

        body = {
            "outTrackId": card.card_id,
            "guid": str(uuid.uuid4()),
            "key": card.config.card_template_key or "content",
            "content": content,
            "isFull": True,
            "isFinalize": finished,
            "isError": False,
        }
        success = CardEvent.FINISHED if finished else CardEvent.STREAMED
        logger.debug(
            "PUT card/streaming outTrackId={} len={} isFinalize={}",
            card.card_id, len(content), finished,
        )

        try:
            await self._backend.stream(card.access_token, body)
        except Exception as e:
            if _is_template_mismatch(e):
                logger.error(
                    "Card streaming failed with 500 unknownError. Key: {}, Template: {}. "
                    "Check that card_template_key matches the template's content variable.",
                    body["key"], card.config.card_template_id,
                )
                self.store.transition(card, CardEvent.FAILED)
                await self._notify_template_mismatch(card, body["key"])
                raise

            if _is_unauthorized(e) and await self._retry_with_fresh_token(card, body):
                self.store.transition(card, success)
                return

            self.store.transition(card, CardEvent.FAILED)
            logger.error("Card streaming update failed: {}", e)
            raise

        self.store.transition(card, success)

    async def finish(self, card: CardInstance, content: str) -> None:
        await self.stream(card, content, finished=True)

    async def _retry_with_fresh_token(self, card: CardInstance, body: dict[str, Any]) -> bool:
        logger.warning("Card streaming got 401, refreshing token and retrying once")
        try:
            self._tokens.invalidate(card.config.client_id)
            card.access_token = await self._tokens.get_token(card.config)
            card.token_refreshed_at = self._clock()
            await self._backend.stream(card.access_token, body)
        except Exception as e:
            logger.error("Card retry after token refresh failed: {}", e)
            return False
        return True

    async def _notify_template_mismatch(self, card: CardInstance, key: str) -> None:
        """Tell the conversation about the misconfiguration. Never raises."""
        text = template_mismatch_message(key, card.config.card_template_id or "(unknown)")
        try:
            token = await self._tokens.get_token(card.config)
            url, payload = proactive_route(card.conversation_id, self._peers)
            payload.update({
                "robotCode": card.config.robot_identity,
                "msgKey": "sampleMarkdown",
                "msgParam": json.dumps({"title": "dingbot 提醒", "text": text}, ensure_ascii=False),
            })
            resp = await self._http.post(url, json=payload, headers={"x-acs-dingtalk-access-token": token})
            resp.raise_for_status()
        except Exception as e:
            logger.warning("Failed to send card error notification: {}", e)
