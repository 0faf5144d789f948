from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session, select

from models import EntityKind, StatusEvent, User
from state_machine import allowed_targets, is_terminal


class ResultParameter(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(default="", max_length=120)
    value: str = Field(default="", max_length=200)
    unit: Optional[str] = Field(default=None, max_length=40)
    normal_range: Optional[str] = Field(default=None, alias="normalRange", max_length=80)


class StatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(min_length=1, max_length=64)
    expected_status: Optional[str] = Field(default=None, alias="expectedStatus", max_length=64)
    expected_version: Optional[int] = Field(default=None, alias="expectedVersion", ge=1)
    notes: str = Field(default="", max_length=2000)
    parameters: list[ResultParameter] = Field(default_factory=list, max_length=100)
    attachments: list[str] = Field(default_factory=list, max_length=20)
    interpretation: Optional[str] = Field(default=None, max_length=2000)
    paid_amount: Optional[float] = Field(default=None, alias="paidAmount")

    def transition_payload(self) -> dict:
        return {
            "parameters": [p.model_dump() for p in self.parameters],
            "attachments": list(self.attachments),
            "interpretation": self.interpretation,
            "paid_amount": self.paid_amount,
        }


def lifecycle_fields(kind: EntityKind, status: str) -> dict:
    return {
        "is_terminal": is_terminal(kind, status),
        "allowed_transitions": allowed_targets(kind, status),
    }


def status_history(kind: EntityKind, entity_id: int, session: Session) -> list[dict]:
    events = session.exec(
        select(StatusEvent)
        .where(StatusEvent.entity_kind == kind, StatusEvent.entity_id == entity_id)
        .order_by(StatusEvent.timestamp.asc(), StatusEvent.id.asc())  # type: ignore[union-attr]
    ).all()

    actor_ids = sorted({e.actor_id for e in events if e.actor_id is not None})
    actor_map: dict[int, User] = {}
    if actor_ids:
        actors = session.exec(select(User).where(User.id.in_(actor_ids))).all()  # type: ignore[union-attr]
        actor_map = {a.id: a for a in actors if a.id is not None}

    results = []
    for event in events:
        data = event.model_dump()
        actor = actor_map.get(event.actor_id) if event.actor_id is not None else None
        data["actor_name"] = actor.name if actor else None
        results.append(data)
    return results


def record_creation(kind: EntityKind, entity_id: int, initial: str, actor: User, session: Session) -> None:
    session.add(
        StatusEvent(
            entity_kind=kind,
            entity_id=entity_id,
            actor_id=actor.id,
            actor_role=actor.role,
            previous_status="",
            new_status=initial,
        )
    )
