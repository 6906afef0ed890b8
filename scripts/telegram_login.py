"""
One-time Telegram login helper.

Creates the user session file the service uses to talk to the Syntx bot.
Run it once from the project root before starting the service:

    python scripts/telegram_login.py

Telethon asks for the phone number, the login code and (if enabled) the
two-step verification password in this terminal. No password is stored.
"""

import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

from agent.correlation import SYNTX_BOT_USERNAME
from agent.syntx import TELEGRAM_API_HASH, TELEGRAM_API_ID, TELEGRAM_SESSION_PATH
from telethon import TelegramClient


async def main() -> None:
    if not TELEGRAM_API_ID or not TELEGRAM_API_HASH:
        print("Set TELEGRAM_API_ID and TELEGRAM_API_HASH (https://my.telegram.org) first.")
        return

    session_file = Path(f"{TELEGRAM_SESSION_PATH}.session")
    if session_file.exists():
        answer = input(
            f"Session already exists at {session_file}. Log in again? [y/N] "
        ).strip().lower()
        if answer != "y":
            print("Aborted.")
            return
        session_file.unlink()

    session_file.parent.mkdir(parents=True, exist_ok=True)
    client = TelegramClient(TELEGRAM_SESSION_PATH, TELEGRAM_API_ID, TELEGRAM_API_HASH)
    await client.start()

    me = await client.get_me()
    print(f"Logged in as @{me.username or me.id} ✅")

    try:
        await client.get_entity(SYNTX_BOT_USERNAME)
        print(f"Agent @{SYNTX_BOT_USERNAME} is reachable.")
    except ValueError:
        print(
            f"Could not resolve @{SYNTX_BOT_USERNAME}. "
            "Open a chat with the bot from this account, then try again."
        )

    await client.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
