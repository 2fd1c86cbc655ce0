"""
dingbot - DingTalk Stream-mode channel adapter
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("dingbot")
except PackageNotFoundError:
    __version__ = "0.1.0"

__logo__ = "🔔"
