"""Outbound delivery: session webhooks, proactive robot messages and media."""

import json
import os
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from dingbot.channels.dingtalk.auth import AccessTokenCache
from dingbot.channels.dingtalk.card import CardService
from dingbot.channels.dingtalk.errors import DingTalkAPIError
from dingbot.channels.dingtalk.media import upload_media
from dingbot.channels.dingtalk.message import detect_markdown_and_extract_title, proactive_route
from dingbot.channels.dingtalk.peers import PeerIdRegistry
from dingbot.channels.dingtalk.signature import sign_webhook_url
from dingbot.channels.dingtalk.types import MediaType, SendOptions, SendResult
from dingbot.config.schema import DingTalkAccountConfig

SESSION_TITLE = "dingbot 消息"
PROACTIVE_TITLE = "dingbot 提醒"


def _check_errcode(resp: httpx.Response) -> dict[str, Any]:
    """Raise for HTTP errors and for ``errcode != 0`` bodies; return the parsed body."""
    resp.raise_for_status()
    try:
        data = resp.json()
    except ValueError:
        return {}
    if isinstance(data, dict) and data.get("errcode", 0) not in (0, None):
        raise DingTalkAPIError(data.get("errcode"), data.get("errmsg", ""))
    return data if isinstance(data, dict) else {}


def _media_msg(media_type: MediaType, media_id: str, media_path: str) -> tuple[str, dict[str, Any]]:
    """Template key and params for a proactive media message."""
    if media_type == "image":
        return "sampleImageMsg", {"photoURL": media_id}
    if media_type == "voice":
        return "sampleAudio", {"mediaId": media_id, "duration": "0"}
    # sampleVideo needs a cover picture; send video as a file instead
    ext = Path(media_path).suffix.lstrip(".") or ("mp4" if media_type == "video" else "file")
    return "sampleFile", {"mediaId": media_id, "fileName": os.path.basename(media_path), "fileType": ext}


class SendService:
    """
    Sends text, markdown and media to DingTalk.

    Errors from the lower-level ``send_*`` calls propagate; :meth:`send_message`
    and :meth:`send_proactive_media` report them in a :class:`SendResult`.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: AccessTokenCache,
        peers: PeerIdRegistry,
        cards: CardService,
    ):
        self._http = http
        self._tokens = tokens
        self._peers = peers
        self._cards = cards

    async def upload_media(self, config: DingTalkAccountConfig, media_path: str, media_type: MediaType) -> str | None:
        return await upload_media(self._http, self._tokens, config, media_path, media_type)

    async def send_by_session(
        self,
        config: DingTalkAccountConfig,
        session_webhook: str,
        text: str,
        options: SendOptions | None = None,
    ) -> dict[str, Any]:
        """Reply through the per-conversation session webhook."""
        options = options or SendOptions()
        token = await self._tokens.get_token(config)
        headers = {"x-acs-dingtalk-access-token": token}

        if options.media_path and options.media_type:
            media_id = await self.upload_media(config, options.media_path, options.media_type)
            if media_id:
                body = {"msgtype": options.media_type, options.media_type: {"media_id": media_id}}
                resp = await self._http.post(session_webhook, json=body, headers=headers)
                return _check_errcode(resp)
            logger.warning("DingTalk media upload failed, falling back to text")

        use_markdown, title = detect_markdown_and_extract_title(text, options, SESSION_TITLE)
        if use_markdown:
            final_text = f"{text} @{options.at_user_id}" if options.at_user_id else text
            body = {"msgtype": "markdown", "markdown": {"title": title, "text": final_text}}
        else:
            body = {"msgtype": "text", "text": {"content": text}}

        if options.at_user_id:
            body["at"] = {"atUserIds": [options.at_user_id], "isAtAll": False}

        resp = await self._http.post(session_webhook, json=body, headers=headers)
        return _check_errcode(resp)

    async def _send_template(
        self, config: DingTalkAccountConfig, target: str, msg_key: str, msg_param: dict[str, Any],
    ) -> dict[str, Any]:
        token = await self._tokens.get_token(config)
        url, payload = proactive_route(target, self._peers)
        payload.update({
            "robotCode": config.robot_identity,
            "msgKey": msg_key,
            "msgParam": json.dumps(msg_param, ensure_ascii=False),
        })
        logger.debug("DingTalk proactive {} to {}", msg_key, payload.get("openConversationId") or payload.get("userIds"))
        resp = await self._http.post(url, json=payload, headers={"x-acs-dingtalk-access-token": token})
        return _check_errcode(resp)

    async def send_proactive_text(
        self,
        config: DingTalkAccountConfig,
        target: str,
        text: str,
        options: SendOptions | None = None,
    ) -> dict[str, Any]:
        """Send outside a session via ``groupMessages/send`` or ``oToMessages/batchSend``."""
        use_markdown, title = detect_markdown_and_extract_title(text, options, PROACTIVE_TITLE)
        if use_markdown:
            return await self._send_template(config, target, "sampleMarkdown", {"title": title, "text": text})
        return await self._send_template(config, target, "sampleText", {"content": text})

    async def send_proactive_media(
        self,
        config: DingTalkAccountConfig,
        target: str,
        media_path: str,
        media_type: MediaType,
    ) -> SendResult:
        """Upload *media_path* and send it as a template message."""
        try:
            media_id = await self.upload_media(config, media_path, media_type)
            if not media_id:
                return SendResult(ok=False, error="Failed to upload media")
            msg_key, msg_param = _media_msg(media_type, media_id, media_path)
            data = await self._send_template(config, target, msg_key, msg_param)
        except Exception as e:
            logger.error("Failed to send DingTalk proactive media: {}", e)
            return SendResult(ok=False, error=str(e))

        message_id = data.get("processQueryKey") or data.get("messageId")
        return SendResult(ok=True, data=data, message_id=message_id)

    async def send_message(
        self,
        config: DingTalkAccountConfig,
        conversation_id: str,
        text: str,
        options: SendOptions | None = None,
    ) -> SendResult:
        """Deliver *text* through the live card, the session webhook, or a proactive send."""
        options = options or SendOptions()
        try:
            if config.message_type == "card" and options.account_id:
                card = self._cards.store.active_for(options.account_id, conversation_id)
                if card is not None:
                    try:
                        await self._cards.stream(card, text)
                        return SendResult(ok=True)
                    except Exception as e:
                        logger.warning("AI card streaming failed, falling back to markdown: {}", e)

            if options.session_webhook:
                data = await self.send_by_session(config, options.session_webhook, text, options)
                return SendResult(ok=True, data=data)

            data = await self.send_proactive_text(config, conversation_id, text, options)
            return SendResult(ok=True, data=data, message_id=data.get("processQueryKey"))
        except Exception as e:
            logger.error("DingTalk send message failed: {}", e)
            return SendResult(ok=False, error=str(e))

    async def send_by_webhook(self, webhook_url: str, text: str, secret: str | None = None) -> dict[str, Any]:
        """Post to a custom-robot webhook, signing the URL when a secret is set."""
        url = sign_webhook_url(webhook_url, secret) if secret else webhook_url
        use_markdown, title = detect_markdown_and_extract_title(text, None, SESSION_TITLE)
        if use_markdown:
            body = {"msgtype": "markdown", "markdown": {"title": title, "text": text}}
        else:
            body = {"msgtype": "text", "text": {"content": text}}
        resp = await self._http.post(url, json=body)
        return _check_errcode(resp)
