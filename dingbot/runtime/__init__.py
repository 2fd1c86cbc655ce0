"""Host runtime interface and the local in-process runtime."""

from dingbot.runtime.base import HostRuntime
from dingbot.runtime.local import LocalRuntime

__all__ = ["HostRuntime", "LocalRuntime"]
