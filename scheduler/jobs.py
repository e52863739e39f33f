"""
Планировщик задач (APScheduler).
Регулярная проверка статуса нод.
"""
import asyncio
import logging
from datetime import datetime

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update

from database.models import Node

logger = logging.getLogger(__name__)


async def node_status_job(provisioner, get_session):
    """Проверить hysteria-server на всех активных нодах и сохранить статус"""
    try:
        async with get_session() as session:
            result = await session.execute(select(Node).where(Node.active.is_(True)))
            nodes = list(result.scalars().all())
        if not nodes:
            return

        # Проверки по SSH идут без открытой сессии БД
        statuses = await asyncio.gather(
            *(provisioner.check_node_status(node) for node in nodes)
        )

        now = datetime.utcnow()
        async with get_session() as session:
            for node, status in zip(nodes, statuses):
                if node.status != status:
                    logger.info(f"📡 Нода {node.name}: {node.status} → {status}")
                await session.execute(
                    update(Node).where(Node.id == node.id).values(status=status, last_check=now)
                )
            await session.commit()

        online = sum(1 for status in statuses if status == "online")
        logger.debug(f"📡 Статус нод обновлён: {online}/{len(nodes)} online")

    except Exception as e:
        logger.error(f"❌ Ошибка проверки статуса нод: {e}")


def setup_scheduler(provisioner, get_session, interval_minutes: int = 2) -> AsyncIOScheduler:
    """Настройка всех запланированных задач"""
    scheduler = AsyncIOScheduler(timezone=pytz.utc)

    # Статус нод каждые SYNC_INTERVAL минут
    scheduler.add_job(
        node_status_job,
        IntervalTrigger(minutes=max(1, interval_minutes)),
        args=[provisioner, get_session],
        id="node_status",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.start()
    logger.info("✅ Планировщик задач запущен")
    logger.info(f"   📡 Статус нод: каждые {max(1, interval_minutes)} мин")

    return scheduler
