from __future__ import annotations

import re
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from loguru import logger
from pydantic import ValidationError

from .config import Settings
from .errors import FetchError, MappingError
from .graph_client import TODO_LISTS_ENDPOINT, GraphClient, RetryPolicy
from .models import RemoteTask, Task, TaskList

LISTS_PAGE_SIZE = 999
TASKS_PAGE_SIZE = 400

ProgressCallback = Callable[[int], None]

# Graph sends seven fractional digits; datetime accepts at most six.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class TokenSource(Protocol):
    def acquire(self) -> str: ...


class ProgressCounter:
    """Running total of accepted tasks, shared by all list fetchers of one run."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def add(self, count: int) -> int:
        if count < 0:
            raise ValueError("progress can only increase")
        with self._lock:
            if count == 0:
                return self._value
            self._value += count
            # Report under the lock so callers never see the total go backwards.
            if self._callback is not None:
                try:
                    self._callback(self._value)
                except Exception:
                    logger.exception(f"progress callback failed at {self._value} tasks")
            return self._value


def _parse_completed(date_time: str, time_zone: str | None) -> datetime:
    try:
        parsed = datetime.fromisoformat(_FRACTION_RE.sub(r"\1", date_time.strip()))
    except ValueError as exc:
        raise MappingError(f"Unparsable completedDateTime {date_time!r}") from exc
    if parsed.tzinfo is not None:
        return parsed
    return parsed.replace(tzinfo=_resolve_zone(time_zone))


def _resolve_zone(name: str | None) -> timezone | ZoneInfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        # Windows zone names like "Pacific Standard Time" are not IANA keys.
        return timezone.utc


def map_task(raw: dict[str, Any], list_id: str | None = None) -> Task | None:
    """Turn one raw Graph todoTask into a Task.

    Returns None for tasks without a completion timestamp. Raises
    MappingError when the record is malformed.
    """
    if not isinstance(raw, dict):
        raise MappingError(f"Expected a task object, got {type(raw).__name__}")
    try:
        remote = RemoteTask.model_validate(raw)
    except ValidationError as exc:
        raise MappingError(f"Malformed task record {raw.get('id')!r}: {exc}") from exc
    if remote.completed_date_time is None:
        return None
    completed = remote.completed_date_time
    return Task(
        id=remote.id,
        title=remote.title or "",
        completed_at=_parse_completed(completed.date_time, completed.time_zone),
        description=(remote.body.content if remote.body else None) or "",
        list_id=list_id,
    )


def discover_lists(client: GraphClient, endpoint: str = TODO_LISTS_ENDPOINT) -> list[TaskList]:
    url = f"{endpoint}?$top={LISTS_PAGE_SIZE}"
    lists: list[TaskList] = []
    for page in client.iter_pages(url):
        try:
            lists.extend(TaskList.model_validate(item) for item in page.items)
        except ValidationError as exc:
            raise FetchError(url, message=f"Malformed task list in response: {exc}") from exc
    logger.info(f"discovered {len(lists)} task lists")
    return lists


def fetch_list_tasks(
    client: GraphClient,
    task_list: TaskList,
    counter: ProgressCounter,
    endpoint: str = TODO_LISTS_ENDPOINT,
    page_size: int = TASKS_PAGE_SIZE,
) -> list[Task]:
    """Fetch the completed tasks of one list.

    A FetchError part way through is logged and the tasks gathered up to
    that point are returned, so one failing list never aborts a run.
    """
    url = f"{endpoint}/{task_list.id}/tasks?$top={page_size}"
    tasks: list[Task] = []
    try:
        for page in client.iter_pages(url):
            accepted = 0
            for raw in page.items:
                try:
                    task = map_task(raw, list_id=task_list.id)
                except MappingError as exc:
                    logger.debug(f"skipping task in list '{task_list.display_name}': {exc}")
                    continue
                if task is None:
                    continue
                tasks.append(task)
                accepted += 1
            counter.add(accepted)
    except FetchError as exc:
        logger.warning(
            f"failed to fetch tasks for list '{task_list.display_name}' (id={task_list.id}), "
            f"keeping {len(tasks)} tasks: {exc}"
        )
        return tasks

    logger.info(f"list '{task_list.display_name}': {len(tasks)} completed tasks")
    return tasks


def ingest(
    lists: Iterable[TaskList],
    fetch: Callable[[TaskList], list[Task]],
    concurrency: int = 3,
) -> list[Task]:
    """Run ``fetch`` over every list with at most ``concurrency`` in flight.

    Results are merged as each list finishes, so lists appear in completion
    order while each list keeps its own order.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    pending = deque(lists)
    in_flight: dict[Future[list[Task]], TaskList] = {}
    all_tasks: list[Task] = []

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="donelog-list") as executor:
        while pending or in_flight:
            while pending and len(in_flight) < concurrency:
                task_list = pending.popleft()
                in_flight[executor.submit(fetch, task_list)] = task_list

            done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in done:
                del in_flight[future]
                all_tasks.extend(future.result())

    return all_tasks


def sort_by_completion(tasks: Iterable[Task]) -> list[Task]:
    """Newest completion first."""
    floor = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(tasks, key=lambda task: task.completed_at or floor, reverse=True)


def dedupe_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Keep the first task seen for each id.

    Graph only promises ids are unique within a list, so this is opt-in.
    """
    seen: set[str] = set()
    unique: list[Task] = []
    for task in tasks:
        if task.id in seen:
            continue
        seen.add(task.id)
        unique.append(task)
    return unique


def fetch_all_completed_tasks(
    credential_provider: TokenSource,
    progress_callback: ProgressCallback | None = None,
    *,
    settings: Settings | None = None,
    endpoint: str = TODO_LISTS_ENDPOINT,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[Task]:
    """Fetch every completed task across all of the user's lists.

    Raises:
        AuthError: If no access token could be acquired.
        FetchError: If the task lists themselves could not be fetched.
    """
    settings = settings or Settings()
    token = credential_provider.acquire()

    start = time.time()
    client = GraphClient(
        token,
        retry=RetryPolicy(max_attempts=settings.max_attempts, backoff=settings.backoff),
        timeout=settings.timeout,
        transport=transport,
        sleep=sleep,
    )
    try:
        lists = discover_lists(client, endpoint)
        counter = ProgressCounter(progress_callback)
        tasks = ingest(
            lists,
            lambda task_list: fetch_list_tasks(client, task_list, counter, endpoint),
            concurrency=settings.concurrency,
        )
    finally:
        client.close()

    logger.info(
        f"fetched {len(tasks)} completed tasks from {len(lists)} lists "
        f"in {round(time.time() - start, 3)} secs"
    )
    return tasks
