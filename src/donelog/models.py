from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TaskList(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    display_name: str = Field(default="", alias="displayName")


class DateTimeTimeZone(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_time: str = Field(alias="dateTime")
    time_zone: str | None = Field(default=None, alias="timeZone")


class ItemBody(BaseModel):
    content: str | None = None


class RemoteTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str | None = None
    completed_date_time: DateTimeTimeZone | None = Field(default=None, alias="completedDateTime")
    body: ItemBody | None = None


class Task(BaseModel):
    id: str
    title: str
    completed_at: datetime | None = None
    description: str = ""
    list_id: str | None = None


class Page(BaseModel):
    items: list[Any] = Field(default_factory=list)
    next_cursor: str | None = None


class ExportMeta(BaseModel):
    timestamp: str
    tool_version: str
    counts: dict[str, int]
    deduped: bool = False
