"""
Click Log Repository - source of truth для пересборки runs

Каждая попытка отметить день записывается как неизменяемое событие.
"""
from datetime import date
from typing import List

from sqlalchemy.orm import Session

from app.infrastructure.db.models import ClickEvent


class ClickEventRepository:
    """
    Repository для работы с click log
    """

    def __init__(self, db: Session):
        self.db = db

    def append_click(
        self,
        user_id: int,
        day: date,
        user_local_date: date,
        user_timezone: str,
        value: bool = True,
    ) -> int:
        """
        Добавить событие в click log

        Args:
            user_id: ID пользователя
            day: Отмеченная дата
            user_local_date: "Сегодня" пользователя в момент клика
            user_timezone: IANA timezone пользователя в момент клика
            value: Значение отметки (v1: только True)

        Returns:
            click_id: ID созданного события

        Example:
            >>> repo = ClickEventRepository(db)
            >>> click_id = repo.append_click(
            ...     user_id=1,
            ...     day=date(2025, 3, 10),
            ...     user_local_date=date(2025, 3, 10),
            ...     user_timezone="Europe/Berlin",
            ... )
        """
        click = ClickEvent(
            user_id=user_id,
            date=day,
            value=value,
            user_local_date=user_local_date,
            user_timezone=user_timezone,
        )

        self.db.add(click)
        self.db.flush()  # Получить ID без commit

        return click.id

    def list_clicks_since(
        self,
        user_id: int,
        after_id: int = 0,
        limit: int = 200,
        only_marked: bool = True,
    ) -> List[ClickEvent]:
        """
        Получить события после указанного ID (для projectors)

        Args:
            user_id: ID пользователя
            after_id: Получить события с ID > after_id (checkpoint)
            limit: Максимум событий за раз (default: 200)
            only_marked: Только value=True

        Returns:
            Список событий отсортированных по ID (ASC)
        """
        query = (
            self.db.query(ClickEvent)
            .filter(
                ClickEvent.user_id == user_id,
                ClickEvent.id > after_id
            )
        )

        if only_marked:
            query = query.filter(ClickEvent.value.is_(True))

        query = query.order_by(ClickEvent.id.asc()).limit(limit)

        return query.all()

    def list_marked_dates(self, user_id: int) -> List[date]:
        """
        Отмеченные даты в порядке первого клика (replay order)
        """
        rows = (
            self.db.query(ClickEvent.date)
            .filter(ClickEvent.user_id == user_id, ClickEvent.value.is_(True))
            .order_by(ClickEvent.id.asc())
            .all()
        )
        seen = set()
        result = []
        for (d,) in rows:
            if d not in seen:
                seen.add(d)
                result.append(d)
        return result

    def list_user_ids(self) -> List[int]:
        """Пользователи, у которых есть хотя бы одно событие"""
        rows = self.db.query(ClickEvent.user_id).distinct().order_by(ClickEvent.user_id).all()
        return [r[0] for r in rows]
