"""RunsProjector - builds runs from the click log through the same merge/extend/create
path as live day marks."""
from app.application.runs import RunMaintenanceEngine
from app.infrastructure.db.models import ClickEvent, Run
from app.readmodels.projectors.base import BaseProjector


class RunsProjector(BaseProjector):
    def __init__(self, db):
        super().__init__(db, projector_name="runs")
        self.engine = RunMaintenanceEngine(db)

    def begin_batch(self, user_id: int) -> None:
        # row lock shared with live extend()
        self.engine.lock_user(user_id)

    def handle_event(self, event: ClickEvent) -> None:
        # v1 logs only value=True; unmarking is not replayed
        if not event.value:
            return
        self.engine.apply(event.user_id, event.date)

    def reset(self, user_id: int) -> None:
        self.db.query(Run).filter(Run.user_id == user_id).delete(synchronize_session="fetch")
        self.db.flush()
        super().reset(user_id)
