"""padbridge - WeChatPadPro bridge connector."""

__version__ = "0.1.0"
__logo__ = "📟"
