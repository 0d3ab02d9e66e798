"""Default achievement catalog."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ead.db.models import Achievement
from ead.db.upsert import insert_for
from ead.gamification.types import AchievementType

logger = logging.getLogger(__name__)

DEFAULT_ACHIEVEMENTS: list[dict] = [
    {
        "name": "Primeira Aula",
        "description": "Assista sua primeira aula",
        "icon": "play",
        "type": AchievementType.FIRST_LESSON.value,
        "requirement": 1,
        "points": 10,
    },
    {
        "name": "Primeiro Curso",
        "description": "Complete seu primeiro curso",
        "icon": "trophy",
        "type": AchievementType.COURSE_COMPLETE.value,
        "requirement": 1,
        "points": 100,
    },
    {
        "name": "Estudante Dedicado",
        "description": "Complete 5 cursos",
        "icon": "star",
        "type": AchievementType.COURSE_COMPLETE.value,
        "requirement": 5,
        "points": 500,
    },
    {
        "name": "Mestre do Conhecimento",
        "description": "Complete 10 cursos",
        "icon": "crown",
        "type": AchievementType.COURSE_COMPLETE.value,
        "requirement": 10,
        "points": 1000,
    },
    {
        "name": "Streak de 7 Dias",
        "description": "Estude por 7 dias consecutivos",
        "icon": "flame",
        "type": AchievementType.STREAK.value,
        "requirement": 7,
        "points": 70,
    },
    {
        "name": "Streak de 30 Dias",
        "description": "Estude por 30 dias consecutivos",
        "icon": "fire",
        "type": AchievementType.STREAK.value,
        "requirement": 30,
        "points": 300,
    },
    {
        "name": "Maratonista",
        "description": "Acumule 10 horas de aulas assistidas",
        "icon": "clock",
        "type": AchievementType.TIME_SPENT.value,
        "requirement": 600,  # minutes
        "points": 150,
    },
    {
        "name": "Destaque da Turma",
        "description": "Fique entre os 3 primeiros do ranking da sua organização",
        "icon": "medal",
        "type": AchievementType.TOP_STUDENT.value,
        "requirement": 3,
        "points": 200,
    },
]


async def catalog_is_empty(db: AsyncSession) -> bool:
    result = await db.execute(select(Achievement.id).limit(1))
    return result.scalar_one_or_none() is None


async def initialize_catalog(db: AsyncSession) -> int:
    """Seed the default achievements if the catalog is empty.

    Safe to call repeatedly and concurrently: rows go in with
    ON CONFLICT (name) DO NOTHING. Returns the number of rows inserted.
    """
    if not await catalog_is_empty(db):
        return 0

    now = datetime.now(timezone.utc)
    inserted = 0
    for data in DEFAULT_ACHIEVEMENTS:
        stmt = (
            insert_for(db, Achievement)
            .values(**data, created_at=now)
            .on_conflict_do_nothing(index_elements=["name"])
            .returning(Achievement.id)
        )
        if (await db.execute(stmt)).scalar_one_or_none() is not None:
            inserted += 1

    await db.commit()
    logger.info("Seeded %d achievement definitions", inserted)
    return inserted
