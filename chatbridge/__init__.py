"""Multi-platform chat channel bridge (Telegram, Discord, Feishu/Lark)."""
