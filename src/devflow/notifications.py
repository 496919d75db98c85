"""Notification messages pushed to the relay after tool-call mutations.

Each notification is a small JSON object whose ``type`` tells receivers what to
re-fetch. Payload keys are camelCase because the web UI consumes them as-is.
The relay never inspects these messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Protocol, Sequence


class NotificationType(str, Enum):
    """Enumerate the change notifications emitted by tool-call handlers."""

    PROJECT_CREATED = "project_created"
    PROJECT_UPDATED = "project_updated"
    FEATURE_CREATED = "feature_created"
    FEATURE_UPDATED = "feature_updated"
    FEATURES_CREATED_BULK = "features_created_bulk"
    FILE_UPLOADED = "file_uploaded"
    FILE_UPDATED = "file_updated"
    TASK_CREATED = "task_created"
    TASKS_CREATED_BULK = "tasks_created_bulk"
    TASK_UPDATED = "task_updated"
    AGENT_CHECKED_IN = "agent_checked_in"
    AGENT_CHECKED_OUT = "agent_checked_out"


def _message(kind: NotificationType, **payload: Any) -> dict[str, Any]:
    return {"type": kind.value, **payload}


def project_created(project: Mapping[str, Any]) -> dict[str, Any]:
    return _message(NotificationType.PROJECT_CREATED, project=dict(project))


def project_updated(project_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
    return _message(NotificationType.PROJECT_UPDATED, projectId=project_id, updates=dict(updates))


def feature_created(feature: Mapping[str, Any]) -> dict[str, Any]:
    return _message(NotificationType.FEATURE_CREATED, feature=dict(feature))


def feature_updated(feature_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
    return _message(NotificationType.FEATURE_UPDATED, featureId=feature_id, updates=dict(updates))


def features_created_bulk(features: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    return _message(NotificationType.FEATURES_CREATED_BULK, features=[dict(f) for f in features])


def file_uploaded(file: Mapping[str, Any]) -> dict[str, Any]:
    return _message(NotificationType.FILE_UPLOADED, file=dict(file))


def file_updated(file_id: str) -> dict[str, Any]:
    return _message(NotificationType.FILE_UPDATED, fileId=file_id)


def task_created(task: Mapping[str, Any]) -> dict[str, Any]:
    return _message(NotificationType.TASK_CREATED, task=dict(task))


def tasks_created_bulk(tasks: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    return _message(NotificationType.TASKS_CREATED_BULK, tasks=[dict(t) for t in tasks])


def task_updated(task_id: str, updates: Mapping[str, Any]) -> dict[str, Any]:
    return _message(NotificationType.TASK_UPDATED, taskId=task_id, updates=dict(updates))


def agent_checked_in(task_id: str, agent_name: str) -> dict[str, Any]:
    return _message(NotificationType.AGENT_CHECKED_IN, taskId=task_id, agentName=agent_name)


def agent_checked_out(task_id: str, agent_name: str) -> dict[str, Any]:
    return _message(NotificationType.AGENT_CHECKED_OUT, taskId=task_id, agentName=agent_name)


class UpdateSink(Protocol):
    async def broadcast_update(self, data: Any) -> bool: ...


class Notifier:
    """Push change notifications through a relay client.

    Call the matching method after a mutation has been persisted. Every method
    returns whether the push reached an open connection; none of them raise.
    """

    def __init__(self, sink: UpdateSink) -> None:
        self._sink = sink

    async def emit(self, message: Mapping[str, Any]) -> bool:
        return await self._sink.broadcast_update(dict(message))

    async def project_created(self, project: Mapping[str, Any]) -> bool:
        return await self.emit(project_created(project))

    async def project_updated(self, project_id: str, updates: Mapping[str, Any]) -> bool:
        return await self.emit(project_updated(project_id, updates))

    async def feature_created(self, feature: Mapping[str, Any]) -> bool:
        return await self.emit(feature_created(feature))

    async def feature_updated(self, feature_id: str, updates: Mapping[str, Any]) -> bool:
        return await self.emit(feature_updated(feature_id, updates))

    async def features_created_bulk(self, features: Sequence[Mapping[str, Any]]) -> bool:
        return await self.emit(features_created_bulk(features))

    async def file_uploaded(self, file: Mapping[str, Any]) -> bool:
        return await self.emit(file_uploaded(file))

    async def file_updated(self, file_id: str) -> bool:
        return await self.emit(file_updated(file_id))

    async def task_created(self, task: Mapping[str, Any]) -> bool:
        return await self.emit(task_created(task))

    async def tasks_created_bulk(self, tasks: Sequence[Mapping[str, Any]]) -> bool:
        return await self.emit(tasks_created_bulk(tasks))

    async def task_updated(self, task_id: str, updates: Mapping[str, Any]) -> bool:
        return await self.emit(task_updated(task_id, updates))

    async def agent_checked_in(self, task_id: str, agent_name: str) -> bool:
        return await self.emit(agent_checked_in(task_id, agent_name))

    async def agent_checked_out(self, task_id: str, agent_name: str) -> bool:
        return await self.emit(agent_checked_out(task_id, agent_name))
