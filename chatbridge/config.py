import os
from dotenv import load_dotenv
from pathlib import Path

# Load environment variables from .env file with explicit path
load_dotenv(dotenv_path=Path(__file__).parent.parent / '.env')

# Telegram Configuration
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_SECRET_TOKEN = os.getenv("TELEGRAM_SECRET_TOKEN")
# Comma-separated numeric ids and/or usernames; empty means everyone is allowed
TELEGRAM_ALLOWED_USERS = [
    entry.strip() for entry in os.getenv("TELEGRAM_ALLOWED_USERS", "").split(",") if entry.strip()
]

# Discord Configuration
DISCORD_BOT_TOKEN = os.getenv("DISCORD_BOT_TOKEN")
DISCORD_APPLICATION_ID = os.getenv("DISCORD_APPLICATION_ID")
DISCORD_PUBLIC_KEY = os.getenv("DISCORD_PUBLIC_KEY")

# Feishu / Lark Configuration
FEISHU_APP_ID = os.getenv("FEISHU_APP_ID")
FEISHU_APP_SECRET = os.getenv("FEISHU_APP_SECRET")
FEISHU_ENCRYPT_KEY = os.getenv("FEISHU_ENCRYPT_KEY")
FEISHU_VERIFICATION_TOKEN = os.getenv("FEISHU_VERIFICATION_TOKEN")
# Use open.larksuite.com instead of open.feishu.cn
FEISHU_USE_LARK = os.getenv("FEISHU_USE_LARK", "false").lower() == "true"

# Public base URL this service is reachable at (used when registering webhooks)
PUBLIC_WEBHOOK_BASE_URL = os.getenv("PUBLIC_WEBHOOK_BASE_URL")

# Chat pipeline Configuration
CHAT_API_URL = os.getenv("CHAT_API_URL", "http://localhost:3000")
CHANNEL_API_KEY = os.getenv("CHANNEL_API_KEY", "")
CHAT_API_TIMEOUT_SECONDS = float(os.getenv("CHAT_API_TIMEOUT_SECONDS", "120"))

# Outbound platform API timeout
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
