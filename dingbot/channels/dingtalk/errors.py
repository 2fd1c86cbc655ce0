"""DingTalk error types."""


class DingTalkError(Exception):
    """Base class for DingTalk channel errors."""


class DingTalkConfigError(DingTalkError, ValueError):
    """Missing or invalid account configuration. Never retried."""


class DingTalkAPIError(DingTalkError, RuntimeError):
    """The platform answered with a non-zero ``errcode``."""

    def __init__(self, code: int | str, message: str = ""):
        self.code = code
        self.errmsg = message
        super().__init__(f"DingTalk API error {code}: {message}")
