#!/usr/bin/env python3
"""
Управление бан-листом релея (ключ "ban-list" в Redis).

Использование:
    python manage_bans.py list
    python manage_bans.py add 203.0.113.7
    python manage_bans.py remove 203.0.113.7
"""

import asyncio
import sys

from dotenv import load_dotenv

# Загружаем .env
load_dotenv()

from chatrelay.services.ban_list import BanList
from chatrelay.services.kv_store import RedisKeyValueStore, StoreUnavailable

USAGE = "Использование: python manage_bans.py list | add <address> | remove <address>"


async def run(command: str, address: str | None) -> int:
    store = RedisKeyValueStore()
    try:
        await store.connect()
    except StoreUnavailable as e:
        print(f"❌ Redis недоступен: {e}")
        return 1

    ban_list = BanList(store)
    try:
        if command == "list":
            banned = await ban_list.load()
            if not banned:
                print("Бан-лист пуст")
            for item in banned:
                print(item)
        elif command == "add":
            if await ban_list.ban(address):
                print(f"✅ {address} забанен")
            else:
                print(f"⚠️  {address} уже в бан-листе")
        elif command == "remove":
            if await ban_list.unban(address):
                print(f"✅ {address} разбанен")
            else:
                print(f"⚠️  {address} не найден в бан-листе")
        return 0
    finally:
        await store.close()


def main() -> int:
    if len(sys.argv) < 2 or sys.argv[1] not in ("list", "add", "remove"):
        print(USAGE)
        return 2

    command = sys.argv[1]
    address = sys.argv[2] if len(sys.argv) > 2 else None
    if command != "list" and not address:
        print(USAGE)
        return 2

    return asyncio.run(run(command, address))


if __name__ == "__main__":
    sys.exit(main())
