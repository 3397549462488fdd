"""WeChatPadPro gateway channel: ingestion, gating and delivery."""
