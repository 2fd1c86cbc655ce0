import json
from urllib.parse import parse_qs

import httpx
import pytest

from dingbot.channels.dingtalk.auth import AccessTokenCache
from dingbot.channels.dingtalk.card import CardBackend, CardService, CardStatus, CardStore
from dingbot.channels.dingtalk.peers import PeerIdRegistry
from dingbot.channels.dingtalk.send import SendService
from dingbot.channels.dingtalk.types import SendOptions
from dingbot.config.schema import DingTalkAccountConfig

CONFIG = DingTalkAccountConfig(client_id="id", client_secret="sec", robot_code="robot_1")
WEBHOOK = "https://oapi.dingtalk.com/robot/sendBySession?session=abc"


class Router:
    """MockTransport handler: serves tokens and uploads, records everything else."""

    def __init__(self, reply: dict | None = None, upload: dict | None = None):
        self.reply = reply if reply is not None else {"processQueryKey": "pqk_1"}
        self.upload = upload if upload is not None else {"errcode": 0, "media_id": "media_1"}
        self.sent: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1.0/oauth2/accessToken":
            return httpx.Response(200, json={"accessToken": "tok", "expireIn": 7200})
        if request.url.path == "/media/upload":
            return httpx.Response(200, json=self.upload)
        self.sent.append(request)
        return httpx.Response(200, json=self.reply)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.sent[index].content)


class BrokenBackend(CardBackend):
    async def create(self, token, config, conversation_id, out_track_id) -> None:
        pass

    async def stream(self, token, body) -> None:
        request = httpx.Request("PUT", "https://api.dingtalk.com/v1.0/card/streaming")
        raise httpx.HTTPStatusError("boom", request=request, response=httpx.Response(400, request=request))


def make_sender(router: Router, backend: CardBackend | None = None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(router))
    tokens = AccessTokenCache(http)
    peers = PeerIdRegistry()
    cards = CardService(http, tokens, CardStore(), peers, backend=backend)
    return SendService(http, tokens, peers, cards), peers, cards, http


@pytest.mark.asyncio
async def test_session_reply_plain_text() -> None:
    router = Router(reply={"errcode": 0})
    sender, _, _, http = make_sender(router)

    await sender.send_by_session(CONFIG, WEBHOOK, "hello there")

    assert str(router.sent[0].url) == WEBHOOK
    assert router.sent[0].headers["x-acs-dingtalk-access-token"] == "tok"
    assert router.body() == {"msgtype": "text", "text": {"content": "hello there"}}
    await http.aclose()


@pytest.mark.asyncio
async def test_session_reply_markdown_mentions_user() -> None:
    router = Router(reply={"errcode": 0})
    sender, _, _, http = make_sender(router)

    await sender.send_by_session(CONFIG, WEBHOOK, "# Weekly report\n- done", SendOptions(at_user_id="staff_7"))

    body = router.body()
    assert body["msgtype"] == "markdown"
    assert body["markdown"]["title"] == "Weekly report"
    assert body["markdown"]["text"] == "# Weekly report\n- done @staff_7"
    assert body["at"] == {"atUserIds": ["staff_7"], "isAtAll": False}
    await http.aclose()


@pytest.mark.asyncio
async def test_session_reply_native_media(tmp_path) -> None:
    image = tmp_path / "chart.png"
    image.write_bytes(b"\x89PNG")
    router = Router(reply={"errcode": 0})
    sender, _, _, http = make_sender(router)

    await sender.send_by_session(
        CONFIG, WEBHOOK, "ignored", SendOptions(media_path=str(image), media_type="image"),
    )

    assert router.body() == {"msgtype": "image", "image": {"media_id": "media_1"}}
    await http.aclose()


@pytest.mark.asyncio
async def test_session_reply_falls_back_to_text_when_upload_fails(tmp_path) -> None:
    image = tmp_path / "chart.png"
    image.write_bytes(b"\x89PNG")
    router = Router(reply={"errcode": 0}, upload={"errcode": 40004, "errmsg": "bad type"})
    sender, _, _, http = make_sender(router)

    await sender.send_by_session(
        CONFIG, WEBHOOK, "caption", SendOptions(media_path=str(image), media_type="image"),
    )

    assert router.body() == {"msgtype": "text", "text": {"content": "caption"}}
    await http.aclose()


@pytest.mark.asyncio
async def test_proactive_text_to_group() -> None:
    router = Router()
    sender, _, _, http = make_sender(router)

    await sender.send_proactive_text(CONFIG, "cidGroup42", "ping")

    assert router.sent[0].url.path == "/v1.0/robot/groupMessages/send"
    body = router.body()
    assert body["openConversationId"] == "cidGroup42"
    assert body["robotCode"] == "robot_1"
    assert body["msgKey"] == "sampleText"
    assert json.loads(body["msgParam"]) == {"content": "ping"}
    await http.aclose()


@pytest.mark.asyncio
async def test_proactive_markdown_to_user_restores_casing() -> None:
    router = Router()
    sender, peers, _, http = make_sender(router)
    peers.register("Staff_ABC")

    await sender.send_proactive_text(CONFIG, "staff_abc", "> quoted news")

    assert router.sent[0].url.path == "/v1.0/robot/oToMessages/batchSend"
    body = router.body()
    assert body["userIds"] == ["Staff_ABC"]
    assert body["msgKey"] == "sampleMarkdown"
    assert json.loads(body["msgParam"]) == {"title": "quoted news", "text": "> quoted news"}
    await http.aclose()


@pytest.mark.asyncio
async def test_user_prefix_forces_direct_send() -> None:
    router = Router()
    sender, _, _, http = make_sender(router)

    await sender.send_proactive_text(CONFIG, "user:cidLookalike", "hi")

    assert router.body()["userIds"] == ["cidLookalike"]
    await http.aclose()


@pytest.mark.asyncio
async def test_proactive_media_sends_file_template(tmp_path) -> None:
    doc = tmp_path / "notes.pdf"
    doc.write_bytes(b"%PDF-1.4")
    router = Router()
    sender, _, _, http = make_sender(router)

    result = await sender.send_proactive_media(CONFIG, "cidGroup42", str(doc), "file")

    assert result.ok
    assert result.message_id == "pqk_1"
    body = router.body()
    assert body["msgKey"] == "sampleFile"
    assert json.loads(body["msgParam"]) == {"mediaId": "media_1", "fileName": "notes.pdf", "fileType": "pdf"}
    await http.aclose()


@pytest.mark.asyncio
async def test_proactive_image_uses_photo_url(tmp_path) -> None:
    image = tmp_path / "pic.jpg"
    image.write_bytes(b"jpeg")
    router = Router()
    sender, _, _, http = make_sender(router)

    await sender.send_proactive_media(CONFIG, "user_1", str(image), "image")

    body = router.body()
    assert body["msgKey"] == "sampleImageMsg"
    assert json.loads(body["msgParam"]) == {"photoURL": "media_1"}
    await http.aclose()


@pytest.mark.asyncio
async def test_proactive_media_reports_upload_failure(tmp_path) -> None:
    doc = tmp_path / "notes.pdf"
    doc.write_bytes(b"%PDF-1.4")
    router = Router(upload={"errcode": 40004, "errmsg": "invalid"})
    sender, _, _, http = make_sender(router)

    result = await sender.send_proactive_media(CONFIG, "cidGroup42", str(doc), "file")

    assert not result.ok
    assert result.error == "Failed to upload media"
    assert router.sent == []
    await http.aclose()


@pytest.mark.asyncio
async def test_send_message_reports_api_errors() -> None:
    router = Router(reply={"errcode": 300001, "errmsg": "robot not found"})
    sender, _, _, http = make_sender(router)

    result = await sender.send_message(CONFIG, "cidGroup42", "hello")

    assert not result.ok
    assert result.error == "DingTalk API error 300001: robot not found"
    await http.aclose()


@pytest.mark.asyncio
async def test_send_message_prefers_session_webhook() -> None:
    router = Router(reply={"errcode": 0})
    sender, _, _, http = make_sender(router)

    result = await sender.send_message(CONFIG, "cidGroup42", "hello", SendOptions(session_webhook=WEBHOOK))

    assert result.ok
    assert str(router.sent[0].url) == WEBHOOK
    await http.aclose()


@pytest.mark.asyncio
async def test_send_message_falls_back_when_card_stream_fails() -> None:
    config = CONFIG.model_copy(update={"message_type": "card"})
    router = Router()
    sender, _, cards, http = make_sender(router, backend=BrokenBackend())
    card = await cards.create(config, "cidGroup42", "main")

    result = await sender.send_message(config, "cidGroup42", "hello", SendOptions(account_id="main"))

    assert result.ok
    assert result.message_id == "pqk_1"
    assert card.state is CardStatus.FAILED
    assert router.sent[0].url.path == "/v1.0/robot/groupMessages/send"
    assert cards.store.active_for("main", "cidGroup42") is None
    await http.aclose()


@pytest.mark.asyncio
async def test_webhook_send_is_signed_when_secret_given() -> None:
    router = Router(reply={"errcode": 0})
    sender, _, _, http = make_sender(router)

    await sender.send_by_webhook("https://oapi.dingtalk.com/robot/send?access_token=hook", "alert", secret="SECxyz")

    query = parse_qs(router.sent[0].url.query.decode())
    assert query["access_token"] == ["hook"]
    assert query["timestamp"][0].isdigit()
    assert query["sign"][0]
    assert router.body() == {"msgtype": "text", "text": {"content": "alert"}}
    await http.aclose()


@pytest.mark.asyncio
async def test_webhook_send_without_secret_is_unsigned() -> None:
    router = Router(reply={"errcode": 0})
    sender, _, _, http = make_sender(router)

    await sender.send_by_webhook("https://oapi.dingtalk.com/robot/send?access_token=hook", "alert")

    assert "sign" not in parse_qs(router.sent[0].url.query.decode())
    await http.aclose()


@pytest.mark.asyncio
async def test_send_message_reports_unexpected_token_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"expireIn": 7200})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    tokens = AccessTokenCache(http)
    peers = PeerIdRegistry()
    sender = SendService(http, tokens, peers, CardService(http, tokens, CardStore(), peers))

    result = await sender.send_message(CONFIG, "cidGroup42", "hello")

    assert not result.ok
    assert "accessToken" in result.error
    await http.aclose()
