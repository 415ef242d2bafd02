import asyncio
import logging

from chatrelay.config import settings
from chatrelay.logger import setup_logging
from chatrelay.database.session import init_db, close_db
from chatrelay.services.abuse_gate import AbuseGate
from chatrelay.services.kv_store import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from chatrelay.services.message_store import MessageStore
from chatrelay.services.presence import JoinTracker
from chatrelay.web.server import RelayServer

# Логгер будет инициализирован в main()
logger = logging.getLogger(__name__)


async def build_store() -> KeyValueStore:
    """Создать хранилище состояния (Redis или память процесса)."""
    if settings.redis_enabled:
        logger.info("Подключение к Redis...")
        store = RedisKeyValueStore()
        await store.connect()
        logger.info("Redis подключен")
        return store

    logger.warning("Redis выключен: состояние хранится в памяти процесса (только один воркер!)")
    return MemoryKeyValueStore()


def build_server(store: KeyValueStore) -> RelayServer:
    """Собрать HTTP-сервер вместе с гейтом и хранилищами."""
    gate = AbuseGate.from_settings(store, settings)
    join_tracker = JoinTracker(
        gate.records,
        policy=settings.join_time_policy,
        max_users_per_address=settings.max_users_per_address,
    )
    return RelayServer(
        gate,
        join_tracker,
        MessageStore(),
        host=settings.http_host,
        port=settings.http_port,
        page_limit=settings.messages_page_limit,
        metrics_enabled=settings.metrics_enabled,
    )


async def main():
    """Главная функция релея."""
    logger.info("=" * 60)
    logger.info("ЗАПУСК РЕЛЕЯ")
    logger.info("=" * 60)
    logger.info(
        f"Окно: {settings.rate_limit_window_ms} мс (профиль {settings.rate_limit_profile}), "
        f"порог: {settings.rate_limit_threshold}"
    )
    logger.info(f"Redis: {'включен' if settings.redis_enabled else 'выключен'}")
    logger.info(f"При недоступности хранилища: {'отказ' if settings.store_fail_closed else 'пропуск'}")

    logger.info("Инициализация базы данных...")
    await init_db()
    logger.info("База данных инициализирована")

    store = None
    server = None
    try:
        store = await build_store()
        server = build_server(store)
        await server.start()

        logger.info("=" * 60)
        logger.info("РЕЛЕЙ ГОТОВ К РАБОТЕ")
        logger.info("=" * 60)
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Релей остановлен")
    finally:
        if server is not None:
            logger.info("Остановка HTTP-сервера...")
            await server.stop()

        if isinstance(store, RedisKeyValueStore):
            logger.info("Закрытие соединения с Redis...")
            await store.close()

        await close_db()
        logger.info("База данных закрыта")


def run():
    # Инициализировать логирование только при прямом запуске
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Релей остановлен пользователем (Ctrl+C)")


if __name__ == "__main__":
    run()
