"""DingTalk (钉钉) channel over Stream Mode."""

from dingbot.channels.dingtalk.channel import AccountHandle, DingTalkChannel
from dingbot.channels.dingtalk.signature import generate_signature

__all__ = ["AccountHandle", "DingTalkChannel", "generate_signature"]
