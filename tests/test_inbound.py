import json
import os

import httpx
import pytest

from dingbot.channels.dingtalk.auth import AccessTokenCache
from dingbot.channels.dingtalk.card import CardService, CardStatus, CardStore
from dingbot.channels.dingtalk.dedup import DedupStore
from dingbot.channels.dingtalk.inbound import THINKING_TEXT, InboundHandler, is_self_message
from dingbot.channels.dingtalk.peers import PeerIdRegistry
from dingbot.channels.dingtalk.send import SendService
from dingbot.config.schema import DingTalkAccountConfig
from dingbot.runtime.base import ReplyPayload
from dingbot.runtime.local import LocalRuntime

WEBHOOK = "https://oapi.dingtalk.com/robot/sendBySession?session=s1"
BOT_ID = "$:LWCP_v1:$bot"


class Router:
    def __init__(self, stream_status: int = 200):
        self.stream_status = stream_status
        self.session_posts: list[dict] = []
        self.card_creates: list[dict] = []
        self.card_streams: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1.0/oauth2/accessToken":
            return httpx.Response(200, json={"accessToken": "tok", "expireIn": 7200})
        if path == "/v1.0/robot/messageFiles/download":
            return httpx.Response(200, json={"downloadUrl": "https://files.example.com/blob"})
        if request.url.host == "files.example.com":
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        if path == "/v1.0/card/instances/createAndDeliver":
            self.card_creates.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        if path == "/v1.0/card/streaming":
            self.card_streams.append(json.loads(request.content))
            return httpx.Response(self.stream_status, json={})
        if str(request.url) == WEBHOOK:
            self.session_posts.append(json.loads(request.content))
            return httpx.Response(200, json={"errcode": 0})
        return httpx.Response(404)


def event(**overrides) -> dict:
    data = {
        "msgId": "msg_1",
        "msgtype": "text",
        "text": {"content": "hello bot"},
        "conversationType": "1",
        "conversationId": "cidDM1",
        "senderId": "$:LWCP_v1:$alice",
        "senderStaffId": "staff_1",
        "senderNick": "Alice",
        "chatbotUserId": BOT_ID,
        "sessionWebhook": WEBHOOK,
        "createAt": 1700000000000,
    }
    data.update(overrides)
    return data


def make_handler(tmp_path, router: Router, reply=None, **config):
    config.setdefault("show_thinking", False)
    account = DingTalkAccountConfig(client_id="id", client_secret="sec", robot_code="robot_1", **config)
    http = httpx.AsyncClient(transport=httpx.MockTransport(router))
    tokens = AccessTokenCache(http)
    peers = PeerIdRegistry()
    cards = CardService(http, tokens, CardStore(), peers)
    seen = []

    async def handler(ctx):
        seen.append(ctx)
        if reply is not None:
            async for payload in reply(ctx):
                yield payload
        else:
            yield ReplyPayload(text=f"Echo: {ctx.raw_body}", kind="final")

    runtime = LocalRuntime(store_dir=tmp_path / "sessions", handler=handler)
    inbound = InboundHandler(
        "main", account, runtime,
        http=http, tokens=tokens, sender=SendService(http, tokens, peers, cards),
        cards=cards, dedup=DedupStore(), peers=peers, temp_dir=str(tmp_path),
    )
    return inbound, seen, http


def test_is_self_message() -> None:
    assert is_self_message({"chatbotUserId": BOT_ID, "senderId": BOT_ID})
    assert is_self_message({"chatbotUserId": BOT_ID, "senderStaffId": BOT_ID})
    assert not is_self_message({"chatbotUserId": BOT_ID, "senderId": "someone"})
    assert not is_self_message({"senderId": BOT_ID})


@pytest.mark.asyncio
async def test_direct_message_round_trip(tmp_path) -> None:
    router = Router()
    inbound, seen, http = make_handler(tmp_path, router)

    await inbound.on_event(event())

    assert len(seen) == 1
    ctx = seen[0]
    assert ctx.raw_body == "hello bot"
    assert ctx.chat_type == "direct"
    assert ctx.to == "staff_1"
    assert ctx.session_key == "agent:main:dingtalk:dm:staff_1"
    assert ctx.body.startswith("[DingTalk Alice (staff_1) ")
    assert ctx.body.endswith("] hello bot")
    assert router.session_posts == [{"msgtype": "text", "text": {"content": "Echo: hello bot"}}]

    store = json.loads((tmp_path / "sessions" / "main.json").read_text())
    entry = store["agent:main:dingtalk:dm:staff_1"]
    assert entry["lastRoute"]["to"] == "staff_1"
    assert entry["lastMessageSid"] == "msg_1"
    await http.aclose()


@pytest.mark.asyncio
async def test_group_message_mentions_sender(tmp_path) -> None:
    router = Router()
    inbound, seen, http = make_handler(tmp_path, router)

    await inbound.on_event(event(conversationType="2", conversationId="cidGroupX", conversationTitle="Ops"))

    ctx = seen[0]
    assert ctx.chat_type == "group"
    assert ctx.group_subject == "Ops"
    assert ctx.session_key == "agent:main:dingtalk:group:cidgroupx"
    assert router.session_posts[0]["at"] == {"atUserIds": ["staff_1"], "isAtAll": False}
    assert inbound.peers.resolve("cidgroupx") == "cidGroupX"
    await http.aclose()


@pytest.mark.asyncio
async def test_self_message_is_ignored_without_marking(tmp_path) -> None:
    router = Router()
    inbound, seen, http = make_handler(tmp_path, router)

    await inbound.on_event(event(senderId=BOT_ID, senderStaffId=None))

    assert seen == []
    assert router.session_posts == []
    assert len(inbound.dedup) == 0
    await http.aclose()


@pytest.mark.asyncio
async def test_redelivered_message_is_processed_once(tmp_path) -> None:
    router = Router()
    inbound, seen, http = make_handler(tmp_path, router)

    await inbound.on_event(event())
    await inbound.on_event(event())

    assert len(seen) == 1
    assert len(router.session_posts) == 1
    assert inbound.dedup.is_processed("robot_1:msg_1")
    await http.aclose()


@pytest.mark.asyncio
async def test_dm_allowlist_denial_sends_single_notice(tmp_path) -> None:
    router = Router()
    inbound, seen, http = make_handler(tmp_path, router, dm_policy="allowlist", allow_from=["dingtalk:staff_9"])

    await inbound.on_event(event())

    assert seen == []
    assert len(router.session_posts) == 1
    assert "staff_1" in router.session_posts[0]["markdown"]["text"]
    await http.aclose()


@pytest.mark.asyncio
async def test_dm_allowlist_admits_listed_sender(tmp_path) -> None:
    router = Router()
    inbound, seen, http = make_handler(tmp_path, router, dm_policy="allowlist", allow_from=["STAFF_1"])

    await inbound.on_event(event())

    assert len(seen) == 1
    await http.aclose()


@pytest.mark.asyncio
async def test_group_allowlist_drops_silently(tmp_path) -> None:
    router = Router()
    inbound, seen, http = make_handler(tmp_path, router, group_policy="allowlist", allow_from=["cidOther"])

    await inbound.on_event(event(conversationType="2", conversationId="cidGroupX"))

    assert seen == []
    assert router.session_posts == []
    await http.aclose()


@pytest.mark.asyncio
async def test_thinking_notice_precedes_reply(tmp_path) -> None:
    router = Router()
    inbound, _, http = make_handler(tmp_path, router, show_thinking=True)

    await inbound.on_event(event())

    assert router.session_posts[0]["markdown"]["text"] == THINKING_TEXT
    assert router.session_posts[1]["text"]["content"] == "Echo: hello bot"
    await http.aclose()


@pytest.mark.asyncio
async def test_card_mode_streams_and_finalizes(tmp_path) -> None:
    router = Router()

    async def reply(ctx):
        yield ReplyPayload(text="Hello")
        yield ReplyPayload(text=", world")

    inbound, _, http = make_handler(tmp_path, router, reply=reply, message_type="card")

    await inbound.on_event(event())

    assert len(router.card_creates) == 1
    assert router.card_creates[0]["openSpaceId"] == "dtv1.card//IM_ROBOT.staff_1"
    assert [s["content"] for s in router.card_streams] == ["Hello", "Hello, world", "Hello, world"]
    assert [s["isFinalize"] for s in router.card_streams] == [False, False, True]
    assert router.session_posts == []
    assert inbound.cards.store.active_for("main", "staff_1") is None
    await http.aclose()


@pytest.mark.asyncio
async def test_card_failure_falls_back_to_session_webhook(tmp_path) -> None:
    router = Router(stream_status=400)
    inbound, _, http = make_handler(tmp_path, router, message_type="card")

    await inbound.on_event(event())

    card = inbound.cards.store.get(router.card_creates[0]["outTrackId"])
    assert card.state is CardStatus.FAILED
    assert len(router.card_streams) == 1
    assert router.session_posts == [{"msgtype": "text", "text": {"content": "Echo: hello bot"}}]
    await http.aclose()


@pytest.mark.asyncio
async def test_media_is_downloaded_and_removed(tmp_path) -> None:
    router = Router()
    observed = {}

    async def reply(ctx):
        observed["path"] = ctx.media_path
        observed["existed"] = os.path.exists(ctx.media_path)
        observed["type"] = ctx.media_type
        yield ReplyPayload(text="got it", kind="final")

    inbound, _, http = make_handler(tmp_path, router, reply=reply)

    await inbound.on_event(event(msgtype="picture", content={"downloadCode": "dl_1"}, text=None))

    assert observed["existed"]
    assert observed["type"] == "image/png"
    assert os.path.basename(observed["path"]).startswith("dingtalk_")
    assert not os.path.exists(observed["path"])
    await http.aclose()


@pytest.mark.asyncio
async def test_media_save_failure_still_dispatches(tmp_path) -> None:
    router = Router()
    observed = {}

    async def reply(ctx):
        observed["path"] = ctx.media_path
        yield ReplyPayload(text="got it", kind="final")

    inbound, seen, http = make_handler(tmp_path, router, reply=reply)
    inbound.temp_dir = str(tmp_path / "missing")

    await inbound.on_event(event(msgtype="picture", content={"downloadCode": "dl_1"}, text=None))

    assert len(seen) == 1
    assert observed["path"] is None
    assert router.session_posts == [{"msgtype": "text", "text": {"content": "got it"}}]
    await http.aclose()
