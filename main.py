"""
Точка входа приложения.
Панель управления нодами Hysteria: авторизация клиентов, SSH пул, настройка нод.
"""
import asyncio
import logging

import uvicorn

from config import config
from database import init_db, async_session

logger = logging.getLogger(__name__)


async def on_startup():
    """Действия перед запуском сервера"""
    # Проверяем конфигурацию
    if not config.validate():
        raise ValueError("Ошибка конфигурации. Проверьте .env файл.")

    # Инициализируем базу данных
    await init_db()


async def main():
    """Главная функция"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    await on_startup()

    from api import build_state, create_app

    app = create_app(build_state(config, async_session))

    # SIGTERM/SIGINT → lifespan shutdown → закрытие пула и сессий
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.HOST,
            port=config.PORT,
            log_level="warning",  # Меньше логов
        )
    )
    logger.info(f"▶️ Запуск сервера на {config.HOST}:{config.PORT}")
    await server.serve()
    logger.info("👋 Сервер остановлен")


if __name__ == "__main__":
    asyncio.run(main())
