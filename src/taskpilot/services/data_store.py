import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from pydantic import TypeAdapter

from taskpilot.domains.digest import ActivityReport, UserProfile
from taskpilot.domains.tasks import Task, User
from taskpilot.errors import UserNotFoundError
from taskpilot.ports.vector_store import Document

log = structlog.get_logger()


@dataclass(frozen=True)
class DataStore:
    """Static demo data, loaded once at startup and never written."""

    tasks: list[Task]
    users: list[User]
    personas: list[UserProfile]
    activity: ActivityReport
    comments: list[dict[str, Any]]

    def get_persona(self, user_id: str) -> UserProfile:
        for persona in self.personas:
            if persona.id == user_id:
                return persona
        raise UserNotFoundError(user_id)

    def comment_documents(self) -> list[Document]:
        return [
            Document(
                text=f'{c["author"]} commented on "{c["taskTitle"]}": {c["text"]}',
                metadata={
                    "commentId": c["id"],
                    "taskId": c["taskId"],
                    "taskTitle": c["taskTitle"],
                    "author": c["author"],
                    "timestamp": c["timestamp"],
                    "mentions": c.get("mentions", []),
                },
            )
            for c in self.comments
        ]

    def task_documents(self) -> list[Document]:
        """Budgeted tasks, the candidates for receipt matching."""
        return [
            Document(
                text=f"{t.title}. {t.description or ''}".strip(),
                metadata=t.model_dump(by_alias=True),
            )
            for t in self.tasks
            if t.budget is not None
        ]


def _read(data_dir: Path, name: str) -> Any:
    with open(data_dir / name, encoding="utf-8") as f:
        return json.load(f)


def load_data_store(data_dir: Path) -> DataStore:
    store = DataStore(
        tasks=TypeAdapter(list[Task]).validate_python(_read(data_dir, "tasks.json")),
        users=TypeAdapter(list[User]).validate_python(_read(data_dir, "users.json")),
        personas=TypeAdapter(list[UserProfile]).validate_python(_read(data_dir, "personas.json")),
        activity=ActivityReport.model_validate(_read(data_dir, "activity.json")),
        comments=_read(data_dir, "comments.json"),
    )
    log.info(
        "data_loaded",
        data_dir=str(data_dir),
        tasks=len(store.tasks),
        users=len(store.users),
        personas=len(store.personas),
        comments=len(store.comments),
    )
    return store
