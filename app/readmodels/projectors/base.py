"""
Base Projector - базовый класс для projectors (CQRS read-side)

Projectors строят read models из click log.
Используют checkpoint для идемпотентности и инкрементальных обновлений.
"""
from abc import ABC, abstractmethod
from sqlalchemy.orm import Session

from app.infrastructure.db.models import ClickEvent, ProjectorCheckpoint
from app.infrastructure.eventlog.repository import ClickEventRepository


class BaseProjector(ABC):
    """
    Базовый класс для всех projectors

    Каждый projector:
    1. Читает события из click log (с checkpoint)
    2. Обрабатывает события (handle_event)
    3. Обновляет read model
    4. Сохраняет новый checkpoint
    """

    def __init__(self, db: Session, projector_name: str):
        """
        Args:
            db: SQLAlchemy session
            projector_name: Уникальное имя projector'а (для checkpoint)
        """
        self.db = db
        self.projector_name = projector_name
        self.click_repo = ClickEventRepository(db)

    @abstractmethod
    def handle_event(self, event: ClickEvent) -> None:
        """
        Обработать одно событие и обновить read model

        Note:
            Метод должен быть идемпотентным - повторная обработка
            того же события не должна ломать состояние read model.
        """
        pass

    def begin_batch(self, user_id: int) -> None:
        """
        Вызывается в начале каждой транзакции батча, до чтения checkpoint

        Подклассы берут здесь блокировки (per-user row lock и т.п.).
        """
        pass

    def get_checkpoint(self, user_id: int) -> int:
        """
        Получить текущий checkpoint (last processed click id) из БД

        Returns:
            last_event_id (0 если projector ещё не запускался)
        """
        checkpoint = self.db.query(ProjectorCheckpoint).filter(
            ProjectorCheckpoint.projector_name == self.projector_name,
            ProjectorCheckpoint.user_id == user_id
        ).first()

        return checkpoint.last_event_id if checkpoint else 0

    def save_checkpoint(self, user_id: int, event_id: int) -> None:
        """
        Сохранить checkpoint (last processed click id) в БД
        """
        # Flush перед query чтобы увидеть незакоммиченные изменения
        self.db.flush()

        checkpoint = self.db.query(ProjectorCheckpoint).filter(
            ProjectorCheckpoint.projector_name == self.projector_name,
            ProjectorCheckpoint.user_id == user_id
        ).first()

        if checkpoint:
            checkpoint.last_event_id = event_id
        else:
            checkpoint = ProjectorCheckpoint(
                projector_name=self.projector_name,
                user_id=user_id,
                last_event_id=event_id
            )
            self.db.add(checkpoint)

    def run(self, user_id: int, batch_size: int = 200, commit: bool = True) -> int:
        """
        Запустить projector - обработать все новые события пользователя

        Args:
            user_id: ID пользователя
            batch_size: Размер батча для обработки (default: 200)
            commit: Коммитить после каждого батча. False - вызывающий
                    код владеет транзакцией (пересборка целиком).

        Returns:
            Количество обработанных событий

        Example:
            >>> count = RunsProjector(db).run(user_id=1)
        """
        self.begin_batch(user_id)
        checkpoint = self.get_checkpoint(user_id)
        processed_count = 0

        while True:
            events = self.click_repo.list_clicks_since(
                user_id=user_id,
                after_id=checkpoint,
                limit=batch_size,
            )

            if not events:
                break  # Нет новых событий

            for event in events:
                self.handle_event(event)
                checkpoint = event.id
                processed_count += 1

            # Сохраняем checkpoint после батча
            self.save_checkpoint(user_id, checkpoint)
            if commit:
                self.db.commit()

            # Если получили меньше событий чем batch_size - закончили
            if len(events) < batch_size:
                break

            if commit:
                # commit снял блокировки, следующий батч - новая транзакция
                self.begin_batch(user_id)
                checkpoint = self.get_checkpoint(user_id)

        return processed_count

    def reset(self, user_id: int) -> None:
        """
        Сбросить projector - checkpoint в 0

        Warning:
            Подклассы удаляют свои read models; следующий run() пересоберёт всё.
        """
        self.save_checkpoint(user_id, 0)
